"""
Tile rendering: resamples a georeferenced document raster into a map tile.

For every pixel of the output tile the Web Mercator position is converted to
longitude/latitude, pushed through the inverse of the document transform to
a source pixel, and sampled with ``cv2.remap``. Pixels that fall outside the
source raster are fully transparent.
"""

import logging
import threading
from typing import Callable, Optional

import cv2
import numpy as np

from geotile.config import settings
from geotile.models.geo import FittedTransform, TileCoordinate
from geotile.services.errors import TileRenderError
from geotile.services.rasterize import RasterizeService, rasterize_service
from geotile.services.storage import StorageService, storage_service
from geotile.services.tiles import tile_pixel_lonlat
from geotile.services.transforms import build_inverse

logger = logging.getLogger(__name__)


class TileRenderService:
    """Renders PNG tiles from document rasters."""

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        rasterizer: Optional[RasterizeService] = None,
        tile_size: int = None,
    ):
        self.storage = storage or storage_service
        self.rasterizer = rasterizer or rasterize_service
        self.tile_size = tile_size or settings.tile_size
        self._inverse_cache: dict[str, tuple[str, Callable[[np.ndarray], np.ndarray]]] = {}
        self._lock = threading.Lock()

    def _inverse_for(self, document_id: str, transform: FittedTransform, width: int, height: int):
        key = transform.model_dump_json()
        with self._lock:
            cached = self._inverse_cache.get(document_id)
        if cached is not None and cached[0] == key:
            return cached[1]

        inverse = build_inverse(transform, width, height)
        with self._lock:
            self._inverse_cache[document_id] = (key, inverse)
        return inverse

    def render(self, document_id: str, transform: FittedTransform, tile: TileCoordinate) -> bytes:
        """
        Render one tile as PNG bytes.

        Raises:
            TileRenderError: ``retryable`` is set for I/O failures that may
                succeed on another attempt
        """
        document = self.storage.load_document(document_id)
        if document is None:
            raise TileRenderError(f"Document '{document_id}' no longer exists", {"document_id": document_id})

        try:
            raster = self.rasterizer.load_document_raster(document)
        except ValueError as e:
            raise TileRenderError(f"Source raster is unreadable: {e}", {"document_id": document_id})
        except OSError as e:
            raise TileRenderError(f"Source raster could not be loaded: {e}", {"document_id": document_id}, retryable=True)

        height, width = raster.shape[:2]
        try:
            inverse = self._inverse_for(document_id, transform, width, height)
        except np.linalg.LinAlgError as e:
            raise TileRenderError(f"Transform is not invertible: {e}", {"document_id": document_id})

        size = self.tile_size
        lon, lat = tile_pixel_lonlat(tile, size)
        source = inverse(np.column_stack([lon.ravel(), lat.ravel()]))

        map_x = source[:, 0].reshape(size, size)
        map_y = source[:, 1].reshape(size, size)
        finite = np.isfinite(map_x) & np.isfinite(map_y)
        map_x = np.where(finite, map_x, -1.0).astype(np.float32)
        map_y = np.where(finite, map_y, -1.0).astype(np.float32)

        # Pixels mapping outside the raster become transparent
        valid = finite & (map_x >= 0) & (map_x <= width - 1) & (map_y >= 0) & (map_y <= height - 1)

        warped = cv2.remap(
            raster,
            map_x,
            map_y,
            interpolation=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(255, 255, 255),
        )
        tile_image = cv2.cvtColor(warped, cv2.COLOR_BGR2BGRA)
        tile_image[:, :, 3] = np.where(valid, 255, 0).astype(np.uint8)

        ok, encoded = cv2.imencode(".png", tile_image)
        if not ok:
            raise TileRenderError("PNG encoding failed", {"tile": tile.model_dump()})

        logger.debug(f"Rendered tile {tile.z}/{tile.x}/{tile.y} for {document_id}")
        return encoded.tobytes()


# Global service instance
tile_render_service = TileRenderService()
