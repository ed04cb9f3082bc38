"""
API request and response models.
"""

from datetime import datetime
from typing import Optional, Any, List
from pydantic import BaseModel, Field

from geotile.models.document import Document, FileType, HistoryEntry
from geotile.models.geo import (
    AccuracyReport,
    ControlPoint,
    ControlPointSource,
    FittedTransform,
    GeoBounds,
    TransformFamily,
)
from geotile.models.jobs import StepProgress, TileJob, TileJobState


# ============================================================
# Georeferencing
# ============================================================

class ControlPointIn(BaseModel):
    """A ground control point as submitted by a client."""
    pixel_x: float = Field(description="Column on the source raster (0 = left edge)")
    pixel_y: float = Field(description="Row on the source raster (0 = top edge)")
    longitude: float
    latitude: float
    source: ControlPointSource = ControlPointSource.MANUAL

    def to_control_point(self) -> ControlPoint:
        return ControlPoint(**self.model_dump())


class GeoreferenceRequest(BaseModel):
    """
    Request body for POST /api/v1/documents/{document_id}/georeference.

    Minimum point counts: affine 3, polynomial (order+1)(order+2)/2,
    projective 4, tps 4.
    """
    organization_id: str
    control_points: List[ControlPointIn]
    transform_family: TransformFamily = TransformFamily.AFFINE
    polynomial_order: Optional[int] = Field(
        default=None,
        ge=1,
        description="Polynomial order (polynomial family only, default 2)",
    )
    activate: bool = Field(
        default=True,
        description="If false, the fit is recorded in history without becoming the active transform",
    )


class GeoreferenceResponse(BaseModel):
    """Response from POST /api/v1/documents/{document_id}/georeference."""
    success: bool = True
    document_id: str
    history_entry_id: str
    transform_family: TransformFamily
    polynomial_order: Optional[int] = None
    gcp_count: int
    rmse_meters: float
    accuracy: AccuracyReport
    bounds: GeoBounds
    extent_bounds: Optional[GeoBounds] = None
    transform: FittedTransform
    applied: bool
    processing_time_ms: int


# ============================================================
# Documents and history
# ============================================================

class ActiveFitSummary(BaseModel):
    """Summary of the active transform for document responses."""
    history_entry_id: str
    transform_family: TransformFamily
    gcp_count: int
    rmse_meters: float
    bounds: GeoBounds
    extent_bounds: Optional[GeoBounds] = None
    fitted_at: datetime
    fitted_by: str


class DocumentResponse(BaseModel):
    """Response from GET /api/v1/documents/{document_id}."""
    document_id: str
    organization_id: str
    name: str
    filename: str
    file_type: FileType
    width_px: int
    height_px: int
    dpi: Optional[int] = None
    version: int
    is_georeferenced: bool
    active_fit: Optional[ActiveFitSummary] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        active = None
        if document.active_fit is not None:
            fit = document.active_fit
            active = ActiveFitSummary(
                history_entry_id=fit.history_entry_id,
                transform_family=fit.family,
                gcp_count=len(fit.control_points),
                rmse_meters=fit.accuracy.rmse_meters,
                bounds=fit.bounds,
                extent_bounds=fit.extent_bounds,
                fitted_at=fit.fitted_at,
                fitted_by=fit.fitted_by,
            )
        return cls(
            document_id=document.document_id,
            organization_id=document.organization_id,
            name=document.name,
            filename=document.original_filename,
            file_type=document.file_type,
            width_px=document.width_px,
            height_px=document.height_px,
            dpi=document.dpi,
            version=document.version,
            is_georeferenced=document.is_georeferenced,
            active_fit=active,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )


class DocumentListResponse(BaseModel):
    """Response from GET /api/v1/documents."""
    documents: List[DocumentResponse]
    total: int


class HistoryEntryResponse(BaseModel):
    """One ledger entry."""
    entry_id: str
    transform_family: TransformFamily
    polynomial_order: Optional[int] = None
    point_count: int
    rmse_meters: float
    applied: bool
    active: bool = Field(description="Whether this entry is the document's current transform")
    fitted_at: datetime
    fitted_by: str

    @classmethod
    def from_entry(cls, entry: HistoryEntry, active_entry_id: Optional[str]) -> "HistoryEntryResponse":
        return cls(
            entry_id=entry.entry_id,
            transform_family=entry.family,
            polynomial_order=entry.polynomial_order,
            point_count=entry.point_count,
            rmse_meters=entry.rmse_meters,
            applied=entry.applied,
            active=entry.entry_id == active_entry_id,
            fitted_at=entry.fitted_at,
            fitted_by=entry.fitted_by,
        )


class HistoryResponse(BaseModel):
    """Response from GET /api/v1/documents/{document_id}/history."""
    document_id: str
    entries: List[HistoryEntryResponse]
    total: int


# ============================================================
# Tile jobs
# ============================================================

class GenerateTilesRequest(BaseModel):
    """Request body for POST /api/v1/documents/{document_id}/tiles."""
    organization_id: str
    zoom_levels: Optional[List[int]] = Field(
        default=None,
        description="Zoom levels to render (default from settings)",
    )
    priority: Optional[int] = Field(
        default=None,
        description="Higher priorities run first",
    )


class GenerateTilesResponse(BaseModel):
    """Response from POST /api/v1/documents/{document_id}/tiles."""
    job_id: str
    document_id: str
    state: TileJobState
    zoom_levels: List[int]
    priority: int
    estimated_tile_count: int
    tiles_per_zoom: dict[int, int]
    retry_of: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_job(cls, job: TileJob) -> "GenerateTilesResponse":
        return cls(
            job_id=job.job_id,
            document_id=job.document_id,
            state=job.state,
            zoom_levels=job.zoom_levels,
            priority=job.priority,
            estimated_tile_count=job.step_progress.total_tiles,
            tiles_per_zoom=job.step_progress.tiles_per_zoom,
            retry_of=job.retry_of,
            created_at=job.created_at,
        )


class JobStatusResponse(BaseModel):
    """Response from GET /api/v1/jobs/{job_id}."""
    job_id: str
    document_id: str
    state: TileJobState
    step_progress: StepProgress
    percent: float
    priority: int
    zoom_levels: List[int]
    cancel_requested: bool
    error: Optional[dict[str, Any]] = None
    retry_of: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: TileJob) -> "JobStatusResponse":
        return cls(
            job_id=job.job_id,
            document_id=job.document_id,
            state=job.state,
            step_progress=job.step_progress,
            percent=job.step_progress.percent,
            priority=job.priority,
            zoom_levels=job.zoom_levels,
            cancel_requested=job.cancel_requested,
            error=job.error,
            retry_of=job.retry_of,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    """Response from GET /api/v1/documents/{document_id}/jobs."""
    document_id: str
    jobs: List[JobStatusResponse]
    total: int


# ============================================================
# Error Models
# ============================================================

class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: ErrorDetail
