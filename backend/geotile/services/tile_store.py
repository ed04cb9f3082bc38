"""
Tile storage on the local filesystem: ``tiles_dir/{document_id}/{z}/{x}/{y}.png``.
"""

import logging
from pathlib import Path
from typing import Optional

from geotile.config import settings
from geotile.models.geo import TileCoordinate

logger = logging.getLogger(__name__)


class TileStore:
    """Writes and locates rendered tiles."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or settings.tiles_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_tile_path(self, document_id: str, z: int, x: int, y: int) -> Path:
        return self.base_dir / document_id / str(z) / str(x) / f"{y}.png"

    def put_tile(self, document_id: str, tile: TileCoordinate, data: bytes) -> Path:
        """Write a tile, replacing any previous rendering of the same address."""
        path = self.get_tile_path(document_id, tile.z, tile.x, tile.y)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        logger.debug(f"Stored tile {path} ({len(data)} bytes)")
        return path

    def has_tile(self, document_id: str, z: int, x: int, y: int) -> bool:
        return self.get_tile_path(document_id, z, x, y).exists()


# Global service instance
tile_store = TileStore()
