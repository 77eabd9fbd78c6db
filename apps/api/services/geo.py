"""Coordinate parsing and great-circle distance."""

from __future__ import annotations

import math
from typing import Any, Optional, Tuple

EARTH_RADIUS_KM = 6371.0


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance between two WGS84 points, in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def parse_coordinate(value: Any) -> Optional[float]:
    """Accept a number or numeric string; anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_coordinates(lat: Any, lng: Any) -> Tuple[Optional[float], Optional[float]]:
    """Return an in-range (lat, lng) pair, or (None, None)."""
    latitude = parse_coordinate(lat)
    longitude = parse_coordinate(lng)
    if latitude is None or longitude is None:
        return None, None
    if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
        return None, None
    return latitude, longitude
