"""
Georeferencing endpoint.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from geotile.models.responses import ErrorResponse, GeoreferenceRequest, GeoreferenceResponse
from geotile.routes.deps import get_current_user, http_error
from geotile.services.errors import GeoreferenceError
from geotile.services.georeference import georeference_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["georeference"])


@router.post(
    "/{document_id}/georeference",
    response_model=GeoreferenceResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid control points or singular system"},
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Another fit was applied concurrently"},
    },
)
async def georeference_document(
    document_id: str,
    request: GeoreferenceRequest,
    user_id: str = Depends(get_current_user),
) -> GeoreferenceResponse:
    """
    Fit a pixel-to-geographic transform from ground control points.

    The fit is recorded in the document's history. Unless ``activate`` is
    false it also becomes the document's active transform, replacing the
    previous one.
    """
    control_points = [p.to_control_point() for p in request.control_points]

    try:
        # Fitting is CPU bound
        result = await run_in_threadpool(
            georeference_service.georeference,
            document_id,
            request.organization_id,
            user_id,
            control_points,
            request.transform_family,
            request.polynomial_order,
            request.activate,
        )
    except GeoreferenceError as e:
        logger.warning(f"Georeference failed for {document_id}: {e.code} {e.message}")
        raise http_error(e)

    fit = result.fit
    return GeoreferenceResponse(
        success=True,
        document_id=document_id,
        history_entry_id=result.entry.entry_id,
        transform_family=fit.family,
        polynomial_order=fit.polynomial_order,
        gcp_count=len(control_points),
        rmse_meters=fit.accuracy.rmse_meters,
        accuracy=fit.accuracy,
        bounds=fit.bounds,
        extent_bounds=fit.extent_bounds,
        transform=fit.transform,
        applied=result.applied,
        processing_time_ms=fit.processing_time_ms,
    )
