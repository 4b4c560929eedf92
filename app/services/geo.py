"""
Great-circle distance and travel-time helpers.
"""
from decimal import Decimal, ROUND_HALF_UP
from math import radians, sin, cos, sqrt, atan2

from app.schemas.domain import Location

EARTH_RADIUS_M = 6_371_000


def distance(a: Location, b: Location) -> float:
    """Haversine distance in meters. Callers validate lat/lon ranges upstream."""
    phi1, phi2 = radians(a.lat), radians(b.lat)
    dphi = radians(b.lat - a.lat)
    dlambda = radians(b.lon - a.lon)
    h = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * atan2(sqrt(h), sqrt(1 - h))


def distance_km(a: Location, b: Location) -> float:
    return distance(a, b) / 1000


def eta_seconds(distance_meters: float, avg_speed_kmh: float = 25) -> float:
    return distance_meters / (avg_speed_kmh * 1000 / 3600)


def trip_duration_minutes(distance_km: float, avg_speed_kmh: float = 30) -> int:
    """Whole-minute trip estimate used for fare quotes."""
    minutes = Decimal(str(distance_km / avg_speed_kmh * 60))
    return int(minutes.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
