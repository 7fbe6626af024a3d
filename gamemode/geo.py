"""Great-circle distance helpers for proximity unlocking."""

from __future__ import annotations

from math import atan2, cos, radians, sin, sqrt
from typing import NamedTuple

EARTH_RADIUS_M = 6371000
DEFAULT_UNLOCK_RADIUS_M = 20.0


class LatLng(NamedTuple):
    lat: float
    lng: float


def distance_m(a: LatLng, b: LatLng) -> float:
    """Return distance in metres using haversine formula."""
    d_lat = radians(b.lat - a.lat)
    d_lng = radians(b.lng - a.lng)
    lat1 = radians(a.lat)
    lat2 = radians(b.lat)
    h = sin(d_lat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(d_lng / 2) ** 2
    # Rounding can push h a hair past 1 for antipodal points.
    h = min(1.0, max(0.0, h))
    c = 2 * atan2(sqrt(h), sqrt(1 - h))
    return EARTH_RADIUS_M * c


def is_within_radius(a: LatLng, b: LatLng, radius_m: float = DEFAULT_UNLOCK_RADIUS_M) -> bool:
    return distance_m(a, b) <= radius_m


def coerce_latlng(latitude, longitude) -> LatLng:
    """Parse raw request values into a LatLng, raising ValueError when unusable."""
    lat = float(latitude)
    lng = float(longitude)
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise ValueError("coordinates out of range")
    return LatLng(lat, lng)
