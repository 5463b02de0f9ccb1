"""Geospatial utilities (no external dependencies).

All distances are computed in meters by ``haversine_m``; kilometre call sites convert explicitly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Final


EARTH_RADIUS_M: Final[float] = 6_371_000.0  # mean Earth radius in meters
METERS_PER_KM: Final[float] = 1000.0
KM_PER_DEGREE_LAT: Final[float] = 111.32


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def m_to_km(meters: float) -> float:
    return meters / METERS_PER_KM


def km_to_m(km: float) -> float:
    return km * METERS_PER_KM


def is_inside_circle(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circle."""

    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_valid_coordinates(lat: Any, lng: Any) -> bool:
    """Check that lat/lng are finite numbers within range.

    The exact pair (0, 0) is rejected: it is what a failed numeric coercion used to produce,
    so it is never trusted as a real fix.
    """

    if not (_is_number(lat) and _is_number(lng)):
        return False
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return False
    return not (lat == 0 and lng == 0)


def in_continental_canada(lat: float, lng: float) -> bool:
    """Rough bounding box test (lat 41..83, lng -141..-52)."""

    return 41.0 <= lat <= 83.0 and -141.0 <= lng <= -52.0


@dataclass(frozen=True, slots=True)
class Bounds:
    """Lat/lng bounding box as used by the map endpoints."""

    north: float
    south: float
    east: float
    west: float

    def as_params(self) -> dict[str, str]:
        return {
            "north": f"{self.north:.6f}",
            "south": f"{self.south:.6f}",
            "east": f"{self.east:.6f}",
            "west": f"{self.west:.6f}",
        }

    def as_bbox(self) -> str:
        """``west,south,east,north`` string for bbox query parameters."""

        return f"{self.west:.6f},{self.south:.6f},{self.east:.6f},{self.north:.6f}"


def bounds_around(lat: float, lng: float, radius_km: float) -> Bounds:
    """Approximate bounding box of a circle, clamped to valid lat/lng ranges."""

    d_lat = radius_km / KM_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(lat))
    d_lng = 180.0 if cos_lat < 1e-6 else min(180.0, radius_km / (KM_PER_DEGREE_LAT * cos_lat))
    return Bounds(
        north=min(90.0, lat + d_lat),
        south=max(-90.0, lat - d_lat),
        east=min(180.0, lng + d_lng),
        west=max(-180.0, lng - d_lng),
    )
