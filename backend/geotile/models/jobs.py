"""
Tile job models.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, List
from pydantic import BaseModel, Field
import json

from geotile.models.geo import GeoBounds


class TileJobState(str, Enum):
    """Tile job lifecycle: queued -> running -> succeeded | failed | canceled."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (TileJobState.SUCCEEDED, TileJobState.FAILED, TileJobState.CANCELED)


class StepProgress(BaseModel):
    """Progress of a tile job, written by the worker and read by status queries."""
    total_tiles: int = 0
    completed_tiles: int = 0
    current_zoom: Optional[int] = None
    current_step: str = "Waiting for worker"
    tiles_per_zoom: dict[int, int] = Field(default_factory=dict)

    @property
    def percent(self) -> float:
        if self.total_tiles == 0:
            return 0.0
        return round(100.0 * self.completed_tiles / self.total_tiles, 2)


class TileJob(BaseModel):
    """A request to render a document's tile pyramid - persisted as JSON."""
    job_id: str
    document_id: str
    organization_id: str
    zoom_levels: List[int]
    priority: int
    state: TileJobState = TileJobState.QUEUED

    # Snapshot of the fit and footprint being rendered
    fit_entry_id: str
    bounds: GeoBounds

    step_progress: StepProgress = Field(default_factory=StepProgress)

    cancel_requested: bool = False
    error: Optional[dict[str, Any]] = None
    retry_of: Optional[str] = None

    created_at: datetime
    created_by: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def save(self, path: Path) -> None:
        """Save job to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)
        tmp_path.replace(path)

    @classmethod
    def load(cls, path: Path) -> "TileJob":
        """Load job from JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls.model_validate(data)
