"""
Transform solver: fits pixel -> geographic transforms from control points.

Supported families:
- Affine: two linear least-squares problems (longitude, latitude) over [1, x, y]
- Polynomial(order): same structure over every monomial of x, y up to ``order``
- Projective: 8-parameter direct linear transform with h33 fixed to 1
- Thin plate spline: affine part plus r^2 log r radial basis, solved through
  the augmented system [K P; P^T 0] [w; a] = [v; 0]

Pixel coordinates are normalized (centroid at the origin, mean distance
sqrt(2)) before any design matrix is built so that conditioning reflects the
point geometry rather than the raster size. Geographic targets are centered
on their mean for the same reason.
"""

import logging
import math
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from geotile.config import settings
from geotile.models.geo import (
    AffineTransform,
    ControlPoint,
    FittedTransform,
    PolynomialTransform,
    ProjectiveTransform,
    ThinPlateSplineTransform,
    TransformFamily,
)
from geotile.services.errors import (
    DegenerateGeometryError,
    SingularSystemError,
    UnsupportedFamilyError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_POLYNOMIAL_ORDER = 2

# Grid resolution used to fit approximate inverses of non-invertible families
INVERSE_GRID_SIZE = 24
INVERSE_POLYNOMIAL_ORDER = 3


# ============================================================
# Family helpers
# ============================================================

def parse_family(family) -> TransformFamily:
    """Coerce a family name or enum value, rejecting anything unknown."""
    if isinstance(family, TransformFamily):
        return family
    try:
        return TransformFamily(str(family).lower())
    except ValueError:
        raise UnsupportedFamilyError(
            f"Unsupported transform family '{family}'",
            {"family": str(family), "supported": [f.value for f in TransformFamily]},
        )


def polynomial_term_count(order: int) -> int:
    """Number of monomials of total degree <= order in two variables."""
    return (order + 1) * (order + 2) // 2


def minimum_points(family, order: Optional[int] = None) -> int:
    """Minimum number of control points needed to fit ``family``."""
    family = parse_family(family)
    if family == TransformFamily.AFFINE:
        return 3
    if family == TransformFamily.POLYNOMIAL:
        return polynomial_term_count(order if order is not None else DEFAULT_POLYNOMIAL_ORDER)
    return 4


def monomial_exponents(order: int) -> List[Tuple[int, int]]:
    """Exponent pairs (i, j) for x^i * y^j ordered by degree: 1, x, y, x^2, xy, y^2, ..."""
    exponents = []
    for degree in range(order + 1):
        for i in range(degree, -1, -1):
            exponents.append((i, degree - i))
    return exponents


# ============================================================
# Design matrices
# ============================================================

def control_point_arrays(points: Sequence[ControlPoint]) -> Tuple[np.ndarray, np.ndarray]:
    """Split control points into (N, 2) pixel and (N, 2) [lon, lat] arrays."""
    pixels = np.array([[p.pixel_x, p.pixel_y] for p in points], dtype=np.float64)
    geo = np.array([[p.longitude, p.latitude] for p in points], dtype=np.float64)
    return pixels.reshape(-1, 2), geo.reshape(-1, 2)


def normalization(coords: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Similarity normalization (Hartley): returns (offset, scale) so that
    ``(coords - offset) * scale`` has centroid 0 and mean distance sqrt(2).
    """
    offset = coords.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(coords - offset, axis=1)))
    if mean_dist <= 0.0 or not math.isfinite(mean_dist):
        raise DegenerateGeometryError(
            "All control points are coincident",
            {"point_count": int(coords.shape[0])},
        )
    return offset, math.sqrt(2.0) / mean_dist


def normalize(coords: np.ndarray, offset: Sequence[float], scale: float) -> np.ndarray:
    return (coords - np.asarray(offset, dtype=np.float64)) * scale


def polynomial_design_matrix(normalized: np.ndarray, order: int) -> np.ndarray:
    """Design matrix with one column per monomial of the normalized coordinates."""
    x = normalized[:, 0]
    y = normalized[:, 1]
    columns = [(x ** i) * (y ** j) for i, j in monomial_exponents(order)]
    return np.column_stack(columns)


def projective_design_matrix(src: np.ndarray, dst: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    DLT system for a homography with h33 = 1. Each correspondence contributes
    two rows:
        [x, y, 1, 0, 0, 0, -x*u, -y*u] . h = u
        [0, 0, 0, x, y, 1, -x*v, -y*v] . h = v
    """
    n = src.shape[0]
    x, y = src[:, 0], src[:, 1]
    u, v = dst[:, 0], dst[:, 1]
    ones = np.ones(n)
    zeros = np.zeros(n)

    rows_u = np.column_stack([x, y, ones, zeros, zeros, zeros, -x * u, -y * u])
    rows_v = np.column_stack([zeros, zeros, zeros, x, y, ones, -x * v, -y * v])

    A = np.empty((2 * n, 8), dtype=np.float64)
    A[0::2] = rows_u
    A[1::2] = rows_v
    b = np.empty(2 * n, dtype=np.float64)
    b[0::2] = u
    b[1::2] = v
    return A, b


def tps_kernel(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Radial basis U(r) = r^2 log r between every row of ``a`` and ``b``."""
    diff = a[:, None, :] - b[None, :, :]
    r2 = np.sum(diff * diff, axis=2)
    with np.errstate(divide="ignore", invalid="ignore"):
        k = 0.5 * r2 * np.log(r2)
    return np.where(r2 > 0.0, k, 0.0)


def condition_number(matrix: np.ndarray) -> float:
    """2-norm condition number; infinite for rank-deficient matrices."""
    # Fewer equations than unknowns is rank deficient by shape
    if matrix.shape[0] < matrix.shape[1]:
        return math.inf
    s = np.linalg.svd(matrix, compute_uv=False)
    if s.size == 0 or s[-1] <= 0.0:
        return math.inf
    return float(s[0] / s[-1])


# ============================================================
# Solving
# ============================================================

def _check_pivots(A: np.ndarray, tolerance: float) -> None:
    if A.shape[0] < A.shape[1]:
        raise SingularSystemError(
            "Linear system is under-determined",
            {"equations": int(A.shape[0]), "unknowns": int(A.shape[1])},
        )
    s = np.linalg.svd(A, compute_uv=False)
    ratio = float(s[-1] / s[0]) if s[0] > 0 else 0.0
    if ratio < tolerance:
        raise SingularSystemError(
            "Linear system is numerically singular; supply different or additional points",
            {"min_relative_pivot": ratio, "tolerance": tolerance},
        )


def _least_squares(A: np.ndarray, b: np.ndarray, tolerance: float) -> np.ndarray:
    _check_pivots(A, tolerance)
    solution, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
    if not np.all(np.isfinite(solution)):
        raise SingularSystemError("Least-squares solution is not finite")
    return solution


def _fit_polynomial_arrays(
    src: np.ndarray,
    dst: np.ndarray,
    order: int,
    tolerance: float,
) -> Tuple[np.ndarray, float, np.ndarray]:
    """Fit dst as a polynomial of src. Returns (offset, scale, coefficients[n_terms, 2])."""
    offset, scale = normalization(src)
    A = polynomial_design_matrix(normalize(src, offset, scale), order)
    dst_mean = dst.mean(axis=0)
    coef = _least_squares(A, dst - dst_mean, tolerance)
    coef[0] += dst_mean
    return offset, scale, coef


def _eval_polynomial_arrays(
    coords: np.ndarray,
    offset: Sequence[float],
    scale: float,
    coefficients: np.ndarray,
    order: int,
) -> np.ndarray:
    A = polynomial_design_matrix(normalize(coords, offset, scale), order)
    return A @ coefficients


def _fit_affine(pixels: np.ndarray, geo: np.ndarray, order: Optional[int], tolerance: float) -> AffineTransform:
    offset, scale, coef = _fit_polynomial_arrays(pixels, geo, 1, tolerance)

    # Fold the normalization back into plain pixel-space coefficients
    rows = []
    for k in range(2):
        c0, c1, c2 = coef[:, k]
        a = c1 * scale
        b = c2 * scale
        c = c0 - a * offset[0] - b * offset[1]
        rows.append([float(a), float(b), float(c)])
    return AffineTransform(coefficients=rows)


def _fit_polynomial(pixels: np.ndarray, geo: np.ndarray, order: Optional[int], tolerance: float) -> PolynomialTransform:
    order = order if order is not None else DEFAULT_POLYNOMIAL_ORDER
    if order < 1:
        raise ValidationError("Polynomial order must be at least 1", {"order": order}, code="INVALID_POLYNOMIAL_ORDER")
    offset, scale, coef = _fit_polynomial_arrays(pixels, geo, order, tolerance)
    return PolynomialTransform(
        order=order,
        pixel_offset=[float(v) for v in offset],
        pixel_scale=float(scale),
        coefficients=[[float(v) for v in coef[:, 0]], [float(v) for v in coef[:, 1]]],
    )


def _similarity_matrix(offset: np.ndarray, scale: float) -> np.ndarray:
    return np.array([
        [scale, 0.0, -scale * offset[0]],
        [0.0, scale, -scale * offset[1]],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


def _fit_projective(pixels: np.ndarray, geo: np.ndarray, order: Optional[int], tolerance: float) -> ProjectiveTransform:
    pix_offset, pix_scale = normalization(pixels)
    geo_offset, geo_scale = normalization(geo)

    A, b = projective_design_matrix(
        normalize(pixels, pix_offset, pix_scale),
        normalize(geo, geo_offset, geo_scale),
    )
    h = _least_squares(A, b, tolerance)
    h_norm = np.append(h, 1.0).reshape(3, 3)

    T_pix = _similarity_matrix(pix_offset, pix_scale)
    T_geo_inv = np.linalg.inv(_similarity_matrix(geo_offset, geo_scale))
    H = T_geo_inv @ h_norm @ T_pix

    if abs(H[2, 2]) < tolerance:
        raise SingularSystemError("Homography maps the raster origin to infinity")
    H = H / H[2, 2]
    return ProjectiveTransform(coefficients=[float(v) for v in H.flatten()[:8]])


def _fit_tps(pixels: np.ndarray, geo: np.ndarray, order: Optional[int], tolerance: float) -> ThinPlateSplineTransform:
    offset, scale = normalization(pixels)
    src = normalize(pixels, offset, scale)
    n = src.shape[0]

    K = tps_kernel(src, src)
    P = np.column_stack([np.ones(n), src])
    L = np.zeros((n + 3, n + 3), dtype=np.float64)
    L[:n, :n] = K
    L[:n, n:] = P
    L[n:, :n] = P.T

    geo_mean = geo.mean(axis=0)
    rhs = np.zeros((n + 3, 2), dtype=np.float64)
    rhs[:n] = geo - geo_mean

    _check_pivots(L, tolerance)
    try:
        solution = np.linalg.solve(L, rhs)
    except np.linalg.LinAlgError as e:
        raise SingularSystemError(f"Thin plate spline system is singular: {e}")

    weights = solution[:n]
    affine = solution[n:]
    affine[0] += geo_mean

    return ThinPlateSplineTransform(
        pixel_offset=[float(v) for v in offset],
        pixel_scale=float(scale),
        control_points=src.tolist(),
        weights=weights.tolist(),
        affine=affine.tolist(),
    )


_FITTERS = {
    TransformFamily.AFFINE: _fit_affine,
    TransformFamily.POLYNOMIAL: _fit_polynomial,
    TransformFamily.PROJECTIVE: _fit_projective,
    TransformFamily.TPS: _fit_tps,
}


def fit_transform(
    points: Sequence[ControlPoint],
    family=TransformFamily.AFFINE,
    order: Optional[int] = None,
    tolerance: Optional[float] = None,
) -> FittedTransform:
    """
    Fit a pixel -> (longitude, latitude) transform to the control points.

    Args:
        points: Control points, already validated
        family: Transform family to fit
        order: Polynomial order (Polynomial family only)
        tolerance: Smallest acceptable relative pivot (default from settings)

    Returns:
        The family-specific fitted transform

    Raises:
        SingularSystemError: If the system is numerically unstable
        UnsupportedFamilyError: If the family is unknown
    """
    family = parse_family(family)
    tolerance = tolerance if tolerance is not None else settings.singular_pivot_tolerance
    fitter = _FITTERS.get(family)
    if fitter is None:
        raise UnsupportedFamilyError(f"No solver registered for '{family.value}'")

    pixels, geo = control_point_arrays(points)
    transform = fitter(pixels, geo, order, tolerance)
    logger.debug(f"Fitted {family.value} transform to {len(points)} control points")
    return transform


# ============================================================
# Application
# ============================================================

def _apply_affine(t: AffineTransform, pixels: np.ndarray) -> np.ndarray:
    M = np.asarray(t.coefficients, dtype=np.float64)
    return pixels @ M[:, :2].T + M[:, 2]


def _apply_polynomial(t: PolynomialTransform, pixels: np.ndarray) -> np.ndarray:
    coef = np.asarray(t.coefficients, dtype=np.float64).T
    return _eval_polynomial_arrays(pixels, t.pixel_offset, t.pixel_scale, coef, t.order)


def _projective_matrix(t: ProjectiveTransform) -> np.ndarray:
    return np.append(np.asarray(t.coefficients, dtype=np.float64), 1.0).reshape(3, 3)


def _apply_homography(H: np.ndarray, coords: np.ndarray) -> np.ndarray:
    homogeneous = np.column_stack([coords, np.ones(coords.shape[0])]) @ H.T
    w = homogeneous[:, 2:3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return homogeneous[:, :2] / w


def _apply_projective(t: ProjectiveTransform, pixels: np.ndarray) -> np.ndarray:
    return _apply_homography(_projective_matrix(t), pixels)


def _apply_tps(t: ThinPlateSplineTransform, pixels: np.ndarray) -> np.ndarray:
    src = normalize(pixels, t.pixel_offset, t.pixel_scale)
    centers = np.asarray(t.control_points, dtype=np.float64)
    weights = np.asarray(t.weights, dtype=np.float64)
    affine = np.asarray(t.affine, dtype=np.float64)

    P = np.column_stack([np.ones(src.shape[0]), src])
    return tps_kernel(src, centers) @ weights + P @ affine


_APPLIERS = {
    "affine": _apply_affine,
    "polynomial": _apply_polynomial,
    "projective": _apply_projective,
    "tps": _apply_tps,
}


def apply_transform(transform: FittedTransform, pixels) -> np.ndarray:
    """Map (N, 2) pixel coordinates to (N, 2) [longitude, latitude]."""
    applier = _APPLIERS.get(transform.family)
    if applier is None:
        raise UnsupportedFamilyError(f"Cannot apply transform family '{transform.family}'")
    coords = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    return applier(transform, coords)


def apply_to_point(transform: FittedTransform, pixel_x: float, pixel_y: float) -> Tuple[float, float]:
    """Map a single pixel to (longitude, latitude)."""
    lon, lat = apply_transform(transform, [[pixel_x, pixel_y]])[0]
    return float(lon), float(lat)


# ============================================================
# Inversion
# ============================================================

def build_inverse(
    transform: FittedTransform,
    width: int,
    height: int,
) -> Callable[[np.ndarray], np.ndarray]:
    """
    Build a (longitude, latitude) -> pixel mapping for rendering.

    Affine and projective transforms are inverted exactly. Polynomial and
    thin plate spline transforms have no closed-form inverse, so a cubic
    polynomial is fitted to a grid of forward-mapped raster positions.
    """
    if transform.family == "affine":
        M = np.vstack([np.asarray(transform.coefficients, dtype=np.float64), [0.0, 0.0, 1.0]])
        M_inv = np.linalg.inv(M)
        return lambda geo: _apply_homography(M_inv, np.asarray(geo, dtype=np.float64).reshape(-1, 2))

    if transform.family == "projective":
        H_inv = np.linalg.inv(_projective_matrix(transform))
        return lambda geo: _apply_homography(H_inv, np.asarray(geo, dtype=np.float64).reshape(-1, 2))

    xs = np.linspace(0.0, float(width), INVERSE_GRID_SIZE)
    ys = np.linspace(0.0, float(height), INVERSE_GRID_SIZE)
    gx, gy = np.meshgrid(xs, ys)
    grid_pixels = np.column_stack([gx.ravel(), gy.ravel()])
    grid_geo = apply_transform(transform, grid_pixels)

    offset, scale, coef = _fit_polynomial_arrays(
        grid_geo, grid_pixels, INVERSE_POLYNOMIAL_ORDER, settings.singular_pivot_tolerance
    )
    return lambda geo: _eval_polynomial_arrays(
        np.asarray(geo, dtype=np.float64).reshape(-1, 2), offset, scale, coef, INVERSE_POLYNOMIAL_ORDER
    )


def raster_sample_points(width: int, height: int, edge_samples: int = 0) -> np.ndarray:
    """Four raster corners plus ``edge_samples`` evenly spaced points along each edge."""
    count = max(edge_samples, 0) + 2
    xs = np.linspace(0.0, float(width), count)
    ys = np.linspace(0.0, float(height), count)
    points = (
        [(x, 0.0) for x in xs]
        + [(x, float(height)) for x in xs]
        + [(0.0, y) for y in ys[1:-1]]
        + [(float(width), y) for y in ys[1:-1]]
    )
    return np.array(points, dtype=np.float64)
