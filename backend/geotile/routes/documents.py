"""
Document endpoints: upload, metadata, transformation history and rollback.
"""

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from geotile.config import settings
from geotile.models.document import FileType
from geotile.models.responses import (
    DocumentListResponse,
    DocumentResponse,
    ErrorResponse,
    HistoryEntryResponse,
    HistoryResponse,
)
from geotile.routes.deps import get_current_user, http_error
from geotile.services.access import access_service
from geotile.services.errors import GeoreferenceError
from geotile.services.georeference import georeference_service
from geotile.services.rasterize import rasterize_service
from geotile.services.storage import storage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])

_FILE_TYPES = {
    "application/pdf": FileType.PDF,
    "image/png": FileType.PNG,
    "image/jpeg": FileType.JPEG,
}


@router.post(
    "",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid file type or unreadable file"},
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        413: {"model": ErrorResponse, "description": "File too large"},
    },
)
async def upload_document(
    file: UploadFile = File(..., description="Source map (single-page PDF, PNG or JPEG)"),
    organization_id: str = Form(...),
    name: str = Form(None),
    dpi: int = Form(None, description="Rasterization DPI for PDFs (default from settings)"),
    user_id: str = Depends(get_current_user),
) -> DocumentResponse:
    """
    Register a source document to be georeferenced.

    PDFs are rasterized at the configured DPI to determine the pixel space
    control points refer to.
    """
    logger.info(f"Upload request: {file.filename} ({file.content_type}) for org {organization_id}")

    try:
        access_service.require_member(user_id, organization_id)
    except GeoreferenceError as e:
        raise http_error(e)

    if file.content_type not in settings.allowed_content_types:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_FILE_TYPE",
                "message": "File must be a PDF document or PNG/JPEG image",
                "details": {
                    "received_type": file.content_type,
                    "expected_types": settings.allowed_content_types,
                },
            },
        )

    content = await file.read()
    if len(content) > settings.max_file_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "code": "FILE_TOO_LARGE",
                "message": f"File '{file.filename}' exceeds the {settings.max_file_size_mb}MB limit",
                "details": {
                    "size_bytes": len(content),
                    "max_bytes": settings.max_file_size_bytes,
                },
            },
        )

    if dpi is not None and not settings.min_dpi <= dpi <= settings.max_dpi:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_DPI",
                "message": f"DPI must be between {settings.min_dpi} and {settings.max_dpi}",
                "details": {"dpi": dpi},
            },
        )

    file_type = _FILE_TYPES[file.content_type]
    if file_type == FileType.PDF:
        is_valid, error_msg = rasterize_service.validate_pdf(content)
        if not is_valid:
            code = "MULTI_PAGE_PDF" if "pages" in error_msg.lower() else "INVALID_FILE_TYPE"
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": code,
                    "message": error_msg,
                    "details": {"filename": file.filename},
                },
            )

    try:
        info = await run_in_threadpool(rasterize_service.probe, content, file_type, dpi)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_FILE_TYPE",
                "message": str(e),
                "details": {"filename": file.filename},
            },
        )

    document = storage_service.create_document(
        organization_id=organization_id,
        name=name or file.filename,
        original_filename=file.filename,
        file_type=file_type,
        content=content,
        width_px=info.width_px,
        height_px=info.height_px,
        created_by=user_id,
        dpi=info.dpi,
    )
    return DocumentResponse.from_document(document)


@router.get(
    "",
    response_model=DocumentListResponse,
    responses={403: {"model": ErrorResponse, "description": "Not a member of the organization"}},
)
async def list_documents(
    organization_id: str = Query(...),
    user_id: str = Depends(get_current_user),
) -> DocumentListResponse:
    """List an organization's documents, newest first."""
    try:
        access_service.require_member(user_id, organization_id)
    except GeoreferenceError as e:
        raise http_error(e)

    documents = storage_service.list_documents(organization_id)
    return DocumentListResponse(
        documents=[DocumentResponse.from_document(d) for d in documents],
        total=len(documents),
    )


@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document not found"},
    },
)
async def get_document(
    document_id: str,
    organization_id: str = Query(...),
    user_id: str = Depends(get_current_user),
) -> DocumentResponse:
    """Get document metadata and its active transform summary."""
    try:
        document = georeference_service.get_document(document_id, organization_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)
    return DocumentResponse.from_document(document)


@router.get(
    "/{document_id}/history",
    response_model=HistoryResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document not found"},
    },
)
async def get_history(
    document_id: str,
    organization_id: str = Query(...),
    user_id: str = Depends(get_current_user),
) -> HistoryResponse:
    """
    List every fit recorded for a document, newest first.

    Includes trial fits that were never applied.
    """
    try:
        document = georeference_service.get_document(document_id, organization_id, user_id)
        entries = georeference_service.list_history(document_id, organization_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)

    active_id = document.active_fit.history_entry_id if document.active_fit else None
    return HistoryResponse(
        document_id=document_id,
        entries=[HistoryEntryResponse.from_entry(e, active_id) for e in entries],
        total=len(entries),
    )


@router.post(
    "/{document_id}/history/{entry_id}/activate",
    response_model=DocumentResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document or history entry not found"},
        409: {"model": ErrorResponse, "description": "Document was modified concurrently"},
    },
)
async def activate_history_entry(
    document_id: str,
    entry_id: str,
    organization_id: str = Query(...),
    user_id: str = Depends(get_current_user),
) -> DocumentResponse:
    """
    Roll the document back to a previously recorded fit.

    Accuracy and bounds are recomputed from the stored control points.
    """
    try:
        document = await run_in_threadpool(
            georeference_service.activate_entry,
            document_id,
            entry_id,
            organization_id,
            user_id,
        )
    except GeoreferenceError as e:
        raise http_error(e)
    return DocumentResponse.from_document(document)
