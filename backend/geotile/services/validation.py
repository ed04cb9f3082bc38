"""
Control point validation.

Runs before any solve and rejects inputs that cannot produce a meaningful
transform: too few points, coordinates outside WGS84, extents that would
wrap the antimeridian, and degenerate (coincident or collinear) layouts.
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np

from geotile.config import settings
from geotile.models.geo import ControlPoint, TransformFamily
from geotile.services.errors import (
    AntimeridianCrossingError,
    DegenerateGeometryError,
    InsufficientPointsError,
    OutOfRangeCoordinateError,
    ValidationError,
)
from geotile.services.transforms import (
    DEFAULT_POLYNOMIAL_ORDER,
    condition_number,
    control_point_arrays,
    minimum_points,
    normalization,
    normalize,
    parse_family,
    polynomial_design_matrix,
    projective_design_matrix,
)

logger = logging.getLogger(__name__)


def _check_range(points: Sequence[ControlPoint]) -> None:
    for index, p in enumerate(points):
        values = (p.pixel_x, p.pixel_y, p.longitude, p.latitude)
        if not all(math.isfinite(v) for v in values):
            raise OutOfRangeCoordinateError(
                f"Control point {index} has a non-finite coordinate",
                {"index": index},
            )
        if not -90.0 <= p.latitude <= 90.0:
            raise OutOfRangeCoordinateError(
                f"Latitude {p.latitude} of control point {index} is outside [-90, 90]",
                {"index": index, "latitude": p.latitude},
            )
        if not -180.0 <= p.longitude <= 180.0:
            raise OutOfRangeCoordinateError(
                f"Longitude {p.longitude} of control point {index} is outside [-180, 180]",
                {"index": index, "longitude": p.longitude},
            )


def _check_antimeridian(points: Sequence[ControlPoint]) -> None:
    longitudes = [p.longitude for p in points]
    span = max(longitudes) - min(longitudes)
    if span > 180.0:
        raise AntimeridianCrossingError(
            "Control points span more than 180 degrees of longitude; "
            "documents crossing the antimeridian are not supported",
            {"longitude_span": span},
        )


def _check_coincident(pixels: np.ndarray, tolerance: float) -> None:
    n = pixels.shape[0]
    for i in range(n):
        distances = np.linalg.norm(pixels[i + 1:] - pixels[i], axis=1)
        close = np.nonzero(distances <= tolerance)[0]
        if close.size:
            j = int(close[0]) + i + 1
            raise DegenerateGeometryError(
                f"Control points {i} and {j} are coincident",
                {"indices": [i, j], "tolerance_px": tolerance},
            )


def _check_conditioning(
    family: TransformFamily,
    pixels: np.ndarray,
    geo: np.ndarray,
    order: int,
    threshold: float,
) -> None:
    offset, scale = normalization(pixels)
    normalized = normalize(pixels, offset, scale)

    design_order = order if family == TransformFamily.POLYNOMIAL else 1
    cond = condition_number(polynomial_design_matrix(normalized, design_order))

    if family == TransformFamily.PROJECTIVE and cond <= threshold:
        geo_offset, geo_scale = normalization(geo)
        A, _ = projective_design_matrix(normalized, normalize(geo, geo_offset, geo_scale))
        cond = max(cond, condition_number(A))

    if cond > threshold:
        raise DegenerateGeometryError(
            "Control points are collinear or otherwise too poorly spread to fit "
            f"a {family.value} transform",
            {"condition_number": cond if math.isfinite(cond) else None, "threshold": threshold},
        )


def validate_control_points(
    points: Sequence[ControlPoint],
    family=TransformFamily.AFFINE,
    order: Optional[int] = None,
    condition_threshold: Optional[float] = None,
    coincident_tolerance: Optional[float] = None,
) -> TransformFamily:
    """
    Validate control points for the requested transform family.

    Args:
        points: Submitted control points
        family: Requested transform family
        order: Polynomial order (Polynomial family only, default 2)
        condition_threshold: Largest acceptable design-matrix condition number
        coincident_tolerance: Pixel distance under which two points coincide

    Returns:
        The parsed transform family

    Raises:
        InsufficientPointsError: Fewer points than the family needs
        OutOfRangeCoordinateError: A coordinate lies outside WGS84
        AntimeridianCrossingError: The points would wrap the antimeridian
        DegenerateGeometryError: Points are coincident or collinear
    """
    family = parse_family(family)
    condition_threshold = condition_threshold or settings.condition_number_threshold
    if coincident_tolerance is None:
        coincident_tolerance = settings.coincident_tolerance_px

    if family == TransformFamily.POLYNOMIAL:
        order = order if order is not None else DEFAULT_POLYNOMIAL_ORDER
        if not 1 <= order <= settings.max_polynomial_order:
            raise ValidationError(
                f"Polynomial order must be between 1 and {settings.max_polynomial_order}",
                {"order": order},
                code="INVALID_POLYNOMIAL_ORDER",
            )

    required = minimum_points(family, order)
    if len(points) < required:
        raise InsufficientPointsError(
            f"Minimum {required} ground control points required for {family.value} transformation",
            {"required": required, "received": len(points), "family": family.value},
        )

    _check_range(points)
    _check_antimeridian(points)

    pixels, geo = control_point_arrays(points)
    _check_coincident(pixels, coincident_tolerance)
    _check_conditioning(family, pixels, geo, order if order is not None else DEFAULT_POLYNOMIAL_ORDER, condition_threshold)

    logger.debug(f"Validated {len(points)} control points for {family.value}")
    return family
