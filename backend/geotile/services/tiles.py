"""
Web Mercator (XYZ / slippy map) tile arithmetic.

Tile (z, x, y) has x growing east and y growing south; at zoom z the world
is a 2^z x 2^z grid. Latitudes are clamped to the Mercator limit.
"""

import math
from typing import Dict, Iterator, Optional, Sequence, Tuple

import numpy as np

from geotile.models.geo import GeoBounds, TileCoordinate

MAX_MERCATOR_LATITUDE = 85.05112878


def _clamp_latitude(lat: float) -> float:
    return max(-MAX_MERCATOR_LATITUDE, min(MAX_MERCATOR_LATITUDE, lat))


def lonlat_to_tile(lon: float, lat: float, zoom: int) -> Tuple[int, int]:
    """Tile containing a WGS84 coordinate."""
    n = 2 ** zoom
    lat_rad = math.radians(_clamp_latitude(lat))
    x = (lon + 180.0) / 360.0 * n
    y = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n
    return min(max(int(math.floor(x)), 0), n - 1), min(max(int(math.floor(y)), 0), n - 1)


def tile_to_lonlat(x: float, y: float, zoom: int) -> Tuple[float, float]:
    """WGS84 coordinate of a (possibly fractional) tile position's north-west corner."""
    n = 2 ** zoom
    lon = x / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))
    return lon, lat


def tile_bounds(tile: TileCoordinate) -> GeoBounds:
    west, north = tile_to_lonlat(tile.x, tile.y, tile.z)
    east, south = tile_to_lonlat(tile.x + 1, tile.y + 1, tile.z)
    return GeoBounds(north=north, south=south, east=east, west=west)


def tile_range(bounds: GeoBounds, zoom: int) -> Tuple[int, int, int, int]:
    """Inclusive (x_min, x_max, y_min, y_max) of the tiles covering ``bounds``."""
    x_min, y_min = lonlat_to_tile(bounds.west, bounds.north, zoom)
    x_max, y_max = lonlat_to_tile(bounds.east, bounds.south, zoom)
    return x_min, x_max, y_min, y_max


def tiles_per_zoom(zoom_levels: Sequence[int], bounds: Optional[GeoBounds] = None) -> Dict[int, int]:
    """
    Tile count per zoom level.

    Exact when ``bounds`` is known, otherwise the full 4^z pyramid level.
    """
    counts = {}
    for zoom in sorted(set(zoom_levels)):
        if bounds is None:
            counts[zoom] = 4 ** zoom
        else:
            x_min, x_max, y_min, y_max = tile_range(bounds, zoom)
            counts[zoom] = (x_max - x_min + 1) * (y_max - y_min + 1)
    return counts


def estimate_tile_count(zoom_levels: Sequence[int], bounds: Optional[GeoBounds] = None) -> int:
    return sum(tiles_per_zoom(zoom_levels, bounds).values())


def iter_tiles(bounds: GeoBounds, zoom_levels: Sequence[int]) -> Iterator[TileCoordinate]:
    """Tiles covering ``bounds`` in a stable order: zoom, then row, then column."""
    for zoom in sorted(set(zoom_levels)):
        x_min, x_max, y_min, y_max = tile_range(bounds, zoom)
        for y in range(y_min, y_max + 1):
            for x in range(x_min, x_max + 1):
                yield TileCoordinate(z=zoom, x=x, y=y)


def tile_pixel_lonlat(tile: TileCoordinate, tile_size: int = 256) -> Tuple[np.ndarray, np.ndarray]:
    """Longitude and latitude of every pixel center of a tile, as (size, size) arrays."""
    n = 2 ** tile.z
    offsets = (np.arange(tile_size, dtype=np.float64) + 0.5) / tile_size
    xs = (tile.x + offsets) / n
    ys = (tile.y + offsets) / n

    lon = xs * 360.0 - 180.0
    lat = np.degrees(np.arctan(np.sinh(np.pi * (1.0 - 2.0 * ys))))
    lon_grid, lat_grid = np.meshgrid(lon, lat)
    return lon_grid, lat_grid
