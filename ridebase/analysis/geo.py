"""Distance and speed helpers."""

from datetime import timedelta

from geopy.distance import geodesic, great_circle


def distance_between_points_metres(p1, p2) -> float:
    """Geodesic (WGS-84 ellipsoid) distance between two points with .lat/.lon."""
    return geodesic((p1.lat, p1.lon), (p2.lat, p2.lon)).meters


def great_circle_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Spherical distance; accurate enough for nearest-place lookups."""
    return great_circle((lat1, lon1), (lat2, lon2)).km


def speed_kmh(metres: float, seconds: float) -> float:
    return metres / seconds * 3.6


def speed_kmh_from_duration(metres: float, duration: timedelta) -> float:
    return speed_kmh(metres, duration.total_seconds())
