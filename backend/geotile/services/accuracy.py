"""
Accuracy evaluation for fitted transforms.

Residuals are measured as ground distance between the supplied coordinate
and the transform's prediction for the same pixel. Two distance models are
available:

- ``haversine``: great-circle distance on a sphere of the WGS84 mean radius
  (default, used for reported RMSE)
- ``equirectangular``: flat approximation with longitude scaled by the cosine
  of the mean latitude; cheaper and accurate for small residuals
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np

from geotile.config import settings
from geotile.models.geo import AccuracyReport, ControlPoint, FittedTransform
from geotile.services.errors import ValidationError
from geotile.services.transforms import apply_transform, control_point_arrays

logger = logging.getLogger(__name__)

EARTH_MEAN_RADIUS_M = 6371008.8


def haversine_m(lon1, lat1, lon2, lat2) -> np.ndarray:
    """Great-circle distance in meters (vectorized)."""
    p1 = np.radians(lat1)
    p2 = np.radians(lat2)
    dphi = p2 - p1
    dl = np.radians(np.asarray(lon2) - np.asarray(lon1))
    a = np.sin(dphi / 2.0) ** 2 + np.cos(p1) * np.cos(p2) * np.sin(dl / 2.0) ** 2
    return 2.0 * EARTH_MEAN_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def equirectangular_m(lon1, lat1, lon2, lat2) -> np.ndarray:
    """Flat-earth distance in meters, longitude scaled at the mean latitude."""
    mean_lat = np.radians((np.asarray(lat1) + np.asarray(lat2)) / 2.0)
    dx = np.radians(np.asarray(lon2) - np.asarray(lon1)) * np.cos(mean_lat)
    dy = np.radians(np.asarray(lat2) - np.asarray(lat1))
    return EARTH_MEAN_RADIUS_M * np.sqrt(dx * dx + dy * dy)


_DISTANCE_METHODS = {
    "haversine": haversine_m,
    "equirectangular": equirectangular_m,
}


def evaluate_accuracy(
    transform: FittedTransform,
    points: Sequence[ControlPoint],
    method: Optional[str] = None,
) -> AccuracyReport:
    """
    Apply ``transform`` to each control point and report ground residuals.

    RMSE = sqrt(mean(residual_m ** 2)).
    """
    method = method or settings.residual_distance_method
    distance = _DISTANCE_METHODS.get(method)
    if distance is None:
        raise ValidationError(
            f"Unknown distance method '{method}'",
            {"supported": sorted(_DISTANCE_METHODS)},
            code="UNKNOWN_DISTANCE_METHOD",
        )

    pixels, geo = control_point_arrays(points)
    if pixels.shape[0] == 0:
        return AccuracyReport(rmse_meters=0.0, per_point_residuals_meters=[], point_count=0, distance_method=method)

    predicted = apply_transform(transform, pixels)
    residuals = distance(geo[:, 0], geo[:, 1], predicted[:, 0], predicted[:, 1])
    residuals = np.where(np.isfinite(residuals), residuals, math.inf)
    rmse = float(np.sqrt(np.mean(residuals ** 2)))

    logger.debug(f"RMSE {rmse:.4f} m over {len(points)} points ({method})")

    return AccuracyReport(
        rmse_meters=rmse,
        per_point_residuals_meters=[float(r) for r in residuals],
        point_count=len(points),
        distance_method=method,
    )
