"""
Business logic services.
"""

from geotile.services.storage import StorageService
from geotile.services.history import HistoryService
from geotile.services.access import AccessService
from geotile.services.quota import QuotaService
from geotile.services.rasterize import RasterizeService
from geotile.services.georeference import GeoreferenceService, compute_fit
from geotile.services.transforms import fit_transform, apply_transform, build_inverse
from geotile.services.validation import validate_control_points
from geotile.services.accuracy import evaluate_accuracy
from geotile.services.render import TileRenderService
from geotile.services.tile_store import TileStore
from geotile.services.scheduler import TileJobScheduler, TileWorkerPool

__all__ = [
    "StorageService",
    "HistoryService",
    "AccessService",
    "QuotaService",
    "RasterizeService",
    "GeoreferenceService",
    "compute_fit",
    "fit_transform",
    "apply_transform",
    "build_inverse",
    "validate_control_points",
    "evaluate_accuracy",
    "TileRenderService",
    "TileStore",
    "TileJobScheduler",
    "TileWorkerPool",
]
