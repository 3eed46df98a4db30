"""
Great-circle distance and radius checks.

Pure functions, no I/O, safe to call from any thread.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.exceptions import InvalidCoordinateError
from core.types import GeoPoint

EARTH_RADIUS_KM = 6371.0


@dataclass(slots=True, frozen=True)
class RadiusCheck:
    """Result of testing a point against a service-area center."""

    within_radius: bool
    distance_km: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "within_radius": self.within_radius,
            "distance_km": self.distance_km,
            "reason": self.reason,
        }


def validate_point(point: Any) -> GeoPoint:
    """
    Check that `point` is a usable coordinate pair.

    Raises:
        InvalidCoordinateError: missing, non-numeric, non-finite or out-of-range values.
    """
    if point is None:
        raise InvalidCoordinateError("Coordinate is missing")

    lat, lng = getattr(point, "lat", None), getattr(point, "lng", None)
    for label, value in (("lat", lat), ("lng", lng)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCoordinateError(f"{label} must be a number, got {value!r}")
        if not math.isfinite(value):
            raise InvalidCoordinateError(f"{label} must be finite, got {value!r}")

    if not -90 <= lat <= 90:
        raise InvalidCoordinateError(f"lat {lat} outside [-90, 90]")
    if not -180 <= lng <= 180:
        raise InvalidCoordinateError(f"lng {lng} outside [-180, 180]")
    return point


def distance_km(point_a: GeoPoint, point_b: GeoPoint) -> float:
    """Haversine distance in kilometres, rounded to 2 decimals."""
    validate_point(point_a)
    validate_point(point_b)

    lat1, lat2 = math.radians(point_a.lat), math.radians(point_b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(point_b.lng - point_a.lng)

    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 2)


def is_within_radius(
    point: GeoPoint,
    center: Optional[GeoPoint],
    radius_km: Optional[float],
) -> RadiusCheck:
    """
    Whether `point` lies within `radius_km` of `center` (boundary inclusive).

    A missing center or a non-positive radius never matches. Invalid
    coordinates still raise InvalidCoordinateError.
    """
    if center is None:
        return RadiusCheck(within_radius=False, reason="service area center has no coordinates")
    if not radius_km or radius_km <= 0:
        return RadiusCheck(within_radius=False, reason="service area radius is zero")

    distance = distance_km(point, center)
    if distance <= radius_km:
        return RadiusCheck(within_radius=True, distance_km=distance)
    return RadiusCheck(
        within_radius=False,
        distance_km=distance,
        reason=f"{distance} km exceeds radius of {radius_km} km",
    )


__all__ = [
    "EARTH_RADIUS_KM",
    "RadiusCheck",
    "validate_point",
    "distance_km",
    "is_within_radius",
]
