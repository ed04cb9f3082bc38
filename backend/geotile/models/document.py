"""
Document and transformation history models.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List
from pydantic import BaseModel, Field
import json

from geotile.models.geo import (
    AccuracyReport,
    ControlPoint,
    FittedTransform,
    GeoBounds,
    TransformFamily,
)


class FileType(str, Enum):
    """Type of uploaded source document."""
    PDF = "pdf"
    PNG = "png"
    JPEG = "jpeg"


class ActiveFit(BaseModel):
    """The authoritative transform of a document and everything derived from it."""
    history_entry_id: str
    family: TransformFamily
    polynomial_order: Optional[int] = None
    transform: FittedTransform
    control_points: List[ControlPoint]
    accuracy: AccuracyReport
    bounds: GeoBounds = Field(description="Envelope of the control points")
    extent_bounds: Optional[GeoBounds] = Field(
        default=None,
        description="Envelope of the whole raster pushed through the transform",
    )
    fitted_at: datetime
    fitted_by: str

    @property
    def footprint(self) -> GeoBounds:
        """Bounds used for tiling: the raster extent when known."""
        return self.extent_bounds or self.bounds


class Document(BaseModel):
    """Document state model - persisted as JSON."""
    document_id: str
    organization_id: str
    name: str
    original_filename: str
    file_type: FileType
    storage_path: str
    width_px: int
    height_px: int
    dpi: Optional[int] = None  # Only present for PDF files

    created_at: datetime
    created_by: str
    updated_at: datetime

    # Incremented on every write of the active fit
    version: int = 0
    active_fit: Optional[ActiveFit] = None

    @property
    def is_georeferenced(self) -> bool:
        return self.active_fit is not None

    def save(self, path: Path) -> None:
        """Save document to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)
        tmp_path.replace(path)

    @classmethod
    def load(cls, path: Path) -> "Document":
        """Load document from JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls.model_validate(data)


class HistoryEntry(BaseModel):
    """One line of the append-only transformation ledger."""
    entry_id: str
    document_id: str
    family: TransformFamily
    polynomial_order: Optional[int] = None
    point_count: int
    rmse_meters: float
    transform: FittedTransform
    control_points: List[ControlPoint]
    applied: bool = Field(description="Whether the fit became active when it was recorded")
    fitted_at: datetime
    fitted_by: str
