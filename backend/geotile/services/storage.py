"""
Storage service for documents on the local filesystem.

Layout:
    documents_dir/
      {document_id}/
        document.json       # Document state, including the active fit
        history.jsonl       # Append-only transformation ledger
        source/original.*   # Uploaded source document
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from geotile.config import settings
from geotile.models.document import ActiveFit, Document, FileType
from geotile.services.errors import ConcurrentUpdateError, DocumentNotFoundError

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    FileType.PDF: "pdf",
    FileType.PNG: "png",
    FileType.JPEG: "jpg",
}


def _is_document_id(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value
    except ValueError:
        return False


class StorageService:
    """Manages document storage and per-document write locks."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or settings.documents_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, document_id: str) -> Iterator[None]:
        """Serialize read-modify-write cycles on one document."""
        with self._locks_guard:
            doc_lock = self._locks.setdefault(document_id, threading.RLock())
        with doc_lock:
            yield

    def get_document_dir(self, document_id: str) -> Path:
        """Get the directory path for a document."""
        return self.base_dir / document_id

    def get_document_path(self, document_id: str) -> Path:
        """Get the path to the document.json file."""
        return self.get_document_dir(document_id) / "document.json"

    def get_history_path(self, document_id: str) -> Path:
        """Get the path to the transformation ledger."""
        return self.get_document_dir(document_id) / "history.jsonl"

    def create_document(
        self,
        organization_id: str,
        name: str,
        original_filename: str,
        file_type: FileType,
        content: bytes,
        width_px: int,
        height_px: int,
        created_by: str,
        dpi: Optional[int] = None,
    ) -> Document:
        """Store an uploaded source document and create its record."""
        document_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        source_dir = self.get_document_dir(document_id) / "source"
        source_dir.mkdir(parents=True, exist_ok=True)
        storage_path = source_dir / f"original.{_EXTENSIONS[file_type]}"
        storage_path.write_bytes(content)

        document = Document(
            document_id=document_id,
            organization_id=organization_id,
            name=name,
            original_filename=original_filename,
            file_type=file_type,
            storage_path=str(storage_path),
            width_px=width_px,
            height_px=height_px,
            dpi=dpi,
            created_at=now,
            created_by=created_by,
            updated_at=now,
        )
        self.save_document(document)

        logger.info(f"Created document {document_id} ({original_filename}, {len(content)} bytes)")
        return document

    def save_document(self, document: Document) -> None:
        """Persist document to disk."""
        document.save(self.get_document_path(document.document_id))
        logger.debug(f"Saved document {document.document_id}")

    def load_document(self, document_id: str) -> Optional[Document]:
        """Load document from disk. Returns None if not found."""
        if not _is_document_id(document_id):
            return None
        path = self.get_document_path(document_id)
        if not path.exists():
            return None
        try:
            return Document.load(path)
        except Exception as e:
            logger.error(f"Failed to load document {document_id}: {e}")
            return None

    def get_document(self, document_id: str, organization_id: str) -> Document:
        """
        Load a document owned by ``organization_id``.

        Documents of other organizations are reported exactly like missing ones.
        """
        document = self.load_document(document_id)
        if document is None or document.organization_id != organization_id:
            raise DocumentNotFoundError(
                f"Document '{document_id}' does not exist",
                {"document_id": document_id},
            )
        return document

    def list_documents(self, organization_id: str) -> List[Document]:
        """List an organization's documents, newest first."""
        documents = []
        for doc_dir in self.base_dir.iterdir():
            if not doc_dir.is_dir():
                continue
            document = self.load_document(doc_dir.name)
            if document is not None and document.organization_id == organization_id:
                documents.append(document)
        return sorted(documents, key=lambda d: d.created_at, reverse=True)

    def set_active_fit(
        self,
        document_id: str,
        active_fit: ActiveFit,
        expected_version: Optional[int] = None,
    ) -> Document:
        """
        Replace the document's active fit.

        When ``expected_version`` is given the write only succeeds if nobody
        else has written the active fit since that version was read.
        """
        with self.lock(document_id):
            document = self.load_document(document_id)
            if document is None:
                raise DocumentNotFoundError(
                    f"Document '{document_id}' does not exist",
                    {"document_id": document_id},
                )
            if expected_version is not None and document.version != expected_version:
                raise ConcurrentUpdateError(
                    "Document was re-georeferenced concurrently; retry the request",
                    {"expected_version": expected_version, "current_version": document.version},
                )
            document.active_fit = active_fit
            document.version += 1
            document.updated_at = datetime.now(timezone.utc)
            self.save_document(document)

        logger.info(
            f"Document {document_id} now uses {active_fit.family.value} fit "
            f"{active_fit.history_entry_id} (version {document.version})"
        )
        return document


# Global service instance
storage_service = StorageService()
