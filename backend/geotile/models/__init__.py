"""
Pydantic models for documents, transforms, tile jobs and API schemas.
"""

from geotile.models.geo import (
    ControlPointSource,
    TransformFamily,
    ControlPoint,
    AffineTransform,
    PolynomialTransform,
    ProjectiveTransform,
    ThinPlateSplineTransform,
    FittedTransform,
    AccuracyReport,
    GeoBounds,
    TileCoordinate,
)
from geotile.models.document import (
    FileType,
    ActiveFit,
    Document,
    HistoryEntry,
)
from geotile.models.jobs import (
    TileJobState,
    StepProgress,
    TileJob,
)
from geotile.models.responses import (
    GeoreferenceRequest,
    GeoreferenceResponse,
    DocumentResponse,
    HistoryResponse,
    GenerateTilesRequest,
    GenerateTilesResponse,
    JobStatusResponse,
    ErrorDetail,
    ErrorResponse,
)

__all__ = [
    "ControlPointSource",
    "TransformFamily",
    "ControlPoint",
    "AffineTransform",
    "PolynomialTransform",
    "ProjectiveTransform",
    "ThinPlateSplineTransform",
    "FittedTransform",
    "AccuracyReport",
    "GeoBounds",
    "TileCoordinate",
    "FileType",
    "ActiveFit",
    "Document",
    "HistoryEntry",
    "TileJobState",
    "StepProgress",
    "TileJob",
    "GeoreferenceRequest",
    "GeoreferenceResponse",
    "DocumentResponse",
    "HistoryResponse",
    "GenerateTilesRequest",
    "GenerateTilesResponse",
    "JobStatusResponse",
    "ErrorDetail",
    "ErrorResponse",
]
