"""
Geometry value types: control points, fitted transforms, accuracy and bounds.

A ``FittedTransform`` is a tagged union discriminated on ``family``; every
variant carries the parameter set that family needs and nothing else.
"""

from enum import Enum
from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ControlPointSource(str, Enum):
    """How a control point was produced."""
    MANUAL = "manual"
    SUGGESTED = "suggested"


class TransformFamily(str, Enum):
    """Transform families supported by the solver."""
    AFFINE = "affine"
    POLYNOMIAL = "polynomial"
    TPS = "tps"
    PROJECTIVE = "projective"


class ControlPoint(BaseModel):
    """A correspondence between a raster pixel and a WGS84 coordinate."""
    model_config = ConfigDict(frozen=True)

    pixel_x: float
    pixel_y: float
    longitude: float
    latitude: float
    source: ControlPointSource = ControlPointSource.MANUAL


# ============================================================
# Fitted Transform Variants
# ============================================================

class AffineTransform(BaseModel):
    """
    Affine transform as two rows of the 2x3 matrix:
        longitude = a*x + b*y + c
        latitude  = d*x + e*y + f
    """
    model_config = ConfigDict(frozen=True)

    family: Literal["affine"] = "affine"
    coefficients: List[List[float]] = Field(description="[[a, b, c], [d, e, f]]")


class PolynomialTransform(BaseModel):
    """
    Polynomial transform over normalized pixel coordinates.

    Pixels are normalized as ``(p - pixel_offset) * pixel_scale`` before the
    monomials are evaluated. Monomials are ordered by total degree, then by
    decreasing power of x: 1, x, y, x^2, xy, y^2, ...
    """
    model_config = ConfigDict(frozen=True)

    family: Literal["polynomial"] = "polynomial"
    order: int
    pixel_offset: List[float]
    pixel_scale: float
    coefficients: List[List[float]] = Field(description="[longitude terms, latitude terms]")


class ProjectiveTransform(BaseModel):
    """
    Homography with h33 fixed to 1:
        w = g*x + h*y + 1
        longitude = (a*x + b*y + c) / w
        latitude  = (d*x + e*y + f) / w
    """
    model_config = ConfigDict(frozen=True)

    family: Literal["projective"] = "projective"
    coefficients: List[float] = Field(description="[a, b, c, d, e, f, g, h]")


class ThinPlateSplineTransform(BaseModel):
    """Thin plate spline: an affine part plus radial basis weights per control point."""
    model_config = ConfigDict(frozen=True)

    family: Literal["tps"] = "tps"
    pixel_offset: List[float]
    pixel_scale: float
    control_points: List[List[float]] = Field(description="Normalized pixel coordinates [[x, y], ...]")
    weights: List[List[float]] = Field(description="Radial weights [[w_lon, w_lat], ...]")
    affine: List[List[float]] = Field(description="Affine part rows for 1, x, y: [[lon, lat], ...]")


FittedTransform = Annotated[
    Union[AffineTransform, PolynomialTransform, ProjectiveTransform, ThinPlateSplineTransform],
    Field(discriminator="family"),
]


# ============================================================
# Derived Results
# ============================================================

class AccuracyReport(BaseModel):
    """Residuals of a fitted transform applied to its own control points."""
    rmse_meters: float
    per_point_residuals_meters: List[float]
    point_count: int
    distance_method: str = "haversine"


class GeoBounds(BaseModel):
    """
    Axis-aligned WGS84 bounding box.

    Bounds never wrap: ``west <= east`` always holds and a box that would
    cross the antimeridian is rejected upstream.
    """
    north: float
    south: float
    east: float
    west: float

    @model_validator(mode="after")
    def _check_order(self) -> "GeoBounds":
        if self.north < self.south:
            raise ValueError(f"north ({self.north}) is below south ({self.south})")
        if self.east < self.west:
            raise ValueError(f"east ({self.east}) is west of west ({self.west})")
        return self

    def union(self, other: "GeoBounds") -> "GeoBounds":
        """Smallest box containing both boxes."""
        return GeoBounds(
            north=max(self.north, other.north),
            south=min(self.south, other.south),
            east=max(self.east, other.east),
            west=min(self.west, other.west),
        )


class TileCoordinate(BaseModel):
    """An XYZ (slippy map) tile address."""
    model_config = ConfigDict(frozen=True)

    z: int
    x: int
    y: int
