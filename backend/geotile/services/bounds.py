"""
Geographic bounds of control points and of transformed raster extents.
"""

import logging
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from geotile.config import settings
from geotile.models.geo import ControlPoint, FittedTransform, GeoBounds
from geotile.services.errors import AntimeridianCrossingError, ValidationError
from geotile.services.transforms import apply_transform, raster_sample_points

logger = logging.getLogger(__name__)


def bounds_from_coordinates(coords: Iterable[Tuple[float, float]]) -> GeoBounds:
    """Min/max envelope of (longitude, latitude) pairs."""
    arr = np.asarray(list(coords), dtype=np.float64).reshape(-1, 2)
    if arr.shape[0] == 0:
        raise ValidationError("Cannot compute bounds of an empty point set", code="EMPTY_BOUNDS")
    return GeoBounds(
        north=float(arr[:, 1].max()),
        south=float(arr[:, 1].min()),
        east=float(arr[:, 0].max()),
        west=float(arr[:, 0].min()),
    )


def bounds_from_points(points: Sequence[ControlPoint]) -> GeoBounds:
    """Envelope of the geographic side of the control points."""
    return bounds_from_coordinates((p.longitude, p.latitude) for p in points)


def bounds_from_raster(
    transform: FittedTransform,
    width: int,
    height: int,
    edge_samples: Optional[int] = None,
) -> GeoBounds:
    """
    Envelope of the whole raster pushed through ``transform``.

    All four corners are always transformed; for non-linear families the
    edges bulge, so additional points are sampled along each edge.
    Results are clamped to the valid WGS84 range.
    """
    if edge_samples is None:
        edge_samples = 0 if transform.family == "affine" else settings.bounds_edge_samples

    samples = raster_sample_points(width, height, edge_samples)
    geo = apply_transform(transform, samples)
    if not np.all(np.isfinite(geo)):
        raise ValidationError(
            "Transform maps part of the raster to infinity",
            {"width": width, "height": height},
            code="UNBOUNDED_EXTENT",
        )

    lons = geo[:, 0]
    if lons.max() - lons.min() > 180.0:
        raise AntimeridianCrossingError(
            "Transformed raster extent spans more than 180 degrees of longitude",
            {"longitude_span": float(lons.max() - lons.min())},
        )

    geo[:, 0] = np.clip(lons, -180.0, 180.0)
    geo[:, 1] = np.clip(geo[:, 1], -90.0, 90.0)
    bounds = bounds_from_coordinates(geo)
    logger.debug(f"Raster extent bounds: {bounds.model_dump()}")
    return bounds
