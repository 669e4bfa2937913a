"""
Great-circle distance between GPS coordinates.
"""
import math
import logging
from typing import Optional, Tuple

from modules.errors import InvalidCoordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


def validate_coordinates(lat: float, lng: float) -> Tuple[float, float]:
    """
    Check that a (lat, lng) pair is finite and in range.
    Returns the pair as floats; raises InvalidCoordinate otherwise.
    """
    if isinstance(lat, bool) or isinstance(lng, bool):
        raise InvalidCoordinate("Coordinates must be numbers, not booleans")
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"Coordinates are not numeric: ({lat!r}, {lng!r})")

    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinate(f"Coordinates are not finite: ({lat_f}, {lng_f})")
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinate(f"Latitude out of range [-90, 90]: {lat_f}")
    if not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinate(f"Longitude out of range [-180, 180]: {lng_f}")
    return lat_f, lng_f


def is_valid_coordinates(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    try:
        validate_coordinates(lat, lng)
    except InvalidCoordinate:
        return False
    return True


def haversine_distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters between two lat/lng points."""
    lat1, lng1 = validate_coordinates(lat1, lng1)
    lat2, lng2 = validate_coordinates(lat2, lng2)

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    # clamp guards against rounding pushing a past 1.0 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def is_within_distance(lat1: float, lng1: float, lat2: float, lng2: float, max_distance_m: float) -> bool:
    """True if the two points are at most max_distance_m apart."""
    distance = haversine_distance_m(lat1, lng1, lat2, lng2)
    logger.debug(f"[GEO] distance={distance:.2f}m max={max_distance_m}m")
    return distance <= max_distance_m
