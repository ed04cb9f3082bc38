"""
Tile generation endpoints: job submission, status, cancel, retry and tile serving.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse

from geotile.models.responses import (
    ErrorResponse,
    GenerateTilesRequest,
    GenerateTilesResponse,
    JobListResponse,
    JobStatusResponse,
)
from geotile.routes.deps import get_current_user, http_error
from geotile.services.errors import GeoreferenceError
from geotile.services.georeference import georeference_service
from geotile.services.scheduler import tile_scheduler
from geotile.services.tile_store import tile_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tiles"])


@router.post(
    "/documents/{document_id}/tiles",
    response_model=GenerateTilesResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid zoom levels or priority"},
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Not georeferenced, or a job is already live"},
        429: {"model": ErrorResponse, "description": "Tile quota exceeded"},
    },
)
async def generate_tiles(
    document_id: str,
    request: GenerateTilesRequest,
    user_id: str = Depends(get_current_user),
) -> GenerateTilesResponse:
    """
    Queue tile generation for a georeferenced document.

    Returns immediately with the job id; background workers render the
    tiles. Only one job per document may be queued or running at a time.
    """
    try:
        job = await run_in_threadpool(
            tile_scheduler.submit,
            document_id,
            request.organization_id,
            user_id,
            zoom_levels=request.zoom_levels,
            priority=request.priority,
        )
    except GeoreferenceError as e:
        raise http_error(e)
    return GenerateTilesResponse.from_job(job)


@router.get(
    "/documents/{document_id}/jobs",
    response_model=JobListResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document not found"},
    },
)
async def list_document_jobs(
    document_id: str,
    organization_id: str = Query(...),
    user_id: str = Depends(get_current_user),
) -> JobListResponse:
    """List a document's tile jobs, newest first."""
    try:
        georeference_service.get_document(document_id, organization_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)

    jobs = tile_scheduler.list_jobs(document_id)
    return JobListResponse(
        document_id=document_id,
        jobs=[JobStatusResponse.from_job(j) for j in jobs],
        total=len(jobs),
    )


@router.get(
    "/documents/{document_id}/tiles/{z}/{x}/{y}.png",
    response_class=FileResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member of the organization"},
        404: {"model": ErrorResponse, "description": "Document or tile not found"},
    },
)
async def get_tile(
    document_id: str,
    z: int,
    x: int,
    y: int,
    organization_id: str = Query(...),
    user_id: str = Depends(get_current_user),
):
    """Serve a rendered tile."""
    try:
        georeference_service.get_document(document_id, organization_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)

    path = tile_store.get_tile_path(document_id, z, x, y)
    if not path.exists():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "TILE_NOT_FOUND",
                "message": f"Tile {z}/{x}/{y} has not been rendered",
            },
        )
    return FileResponse(path, media_type="image/png")


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
)
async def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user),
) -> JobStatusResponse:
    """Get a tile job's state and progress."""
    try:
        job = tile_scheduler.get_job_for(job_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)
    return JobStatusResponse.from_job(job)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobStatusResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
        409: {"model": ErrorResponse, "description": "Job already finished"},
    },
)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
) -> JobStatusResponse:
    """
    Cancel a tile job.

    A running job stops before its next tile; tiles already rendered are kept.
    """
    try:
        job = await run_in_threadpool(tile_scheduler.cancel, job_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)
    return JobStatusResponse.from_job(job)


@router.post(
    "/jobs/{job_id}/retry",
    response_model=GenerateTilesResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
        409: {"model": ErrorResponse, "description": "Job is not failed, or another job is live"},
        429: {"model": ErrorResponse, "description": "Tile quota exceeded"},
    },
)
async def retry_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
) -> GenerateTilesResponse:
    """Queue a new job repeating a failed one."""
    try:
        job = await run_in_threadpool(tile_scheduler.retry, job_id, user_id)
    except GeoreferenceError as e:
        raise http_error(e)
    return GenerateTilesResponse.from_job(job)
