"""
Transformation history ledger.

Every fit is appended as one JSON line to the document's ``history.jsonl``.
The ledger exposes no update or delete operations.
"""

import json
import logging
import os
from typing import List, Optional

from geotile.models.document import HistoryEntry
from geotile.services.errors import HistoryEntryNotFoundError
from geotile.services.storage import StorageService, storage_service

logger = logging.getLogger(__name__)


class HistoryService:
    """Append-only record of fit attempts, keyed by document."""

    def __init__(self, storage: Optional[StorageService] = None):
        self.storage = storage or storage_service

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Append one entry and flush it to disk."""
        path = self.storage.get_history_path(entry.document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.model_dump(mode="json"), default=str)

        with self.storage.lock(entry.document_id):
            with open(path, "a") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())

        logger.info(
            f"Recorded {entry.family.value} fit {entry.entry_id} for document {entry.document_id} "
            f"(points={entry.point_count}, rmse={entry.rmse_meters:.3f} m, applied={entry.applied})"
        )
        return entry

    def list_entries(self, document_id: str) -> List[HistoryEntry]:
        """All entries for a document in the order they were recorded."""
        path = self.storage.get_history_path(document_id)
        if not path.exists():
            return []

        entries = []
        with open(path, "r") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(HistoryEntry.model_validate(json.loads(line)))
                except ValueError as e:
                    # A torn final line from a crash mid-append
                    logger.warning(f"Skipping unreadable history line {line_number} of {document_id}: {e}")
        return entries

    def get_entry(self, document_id: str, entry_id: str) -> HistoryEntry:
        for entry in self.list_entries(document_id):
            if entry.entry_id == entry_id:
                return entry
        raise HistoryEntryNotFoundError(
            f"History entry '{entry_id}' does not exist",
            {"document_id": document_id, "entry_id": entry_id},
        )


# Global service instance
history_service = HistoryService()
