"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
from typing import Optional, Tuple

from ..errors import ValidationError


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Earth radius in meters
    R = 6371000

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def format_location(lat: float, lng: float) -> str:
    """Encode a coordinate the way sessions persist it: "lat,lng"."""
    return f"{lat},{lng}"


def parse_location(value: Optional[str]) -> Optional[Tuple[float, float]]:
    """Decode a "lat,lng" string. Returns None for empty values."""
    if not value:
        return None
    try:
        lat_str, lng_str = value.split(",")
        return float(lat_str), float(lng_str)
    except ValueError:
        raise ValidationError(f"Invalid location '{value}', expected 'lat,lng'")


def validate_coordinates(lat: float, lng: float) -> None:
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError(f"Coordinates out of range: {lat},{lng}")


def distance_to_center(center: Tuple[float, float], point: Tuple[float, float]) -> int:
    """Distance in whole meters between a geofence center and a reported point."""
    return int(round(haversine_distance(center[0], center[1], point[0], point[1])))


def within_radius(distance_m: float, radius_m: float) -> bool:
    return distance_m <= radius_m
