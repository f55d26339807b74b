"""Great-circle distance helpers."""
import math
from typing import Optional

EARTH_RADIUS_KM = 6371.0


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_or_none(
    lat: Optional[float],
    lon: Optional[float],
    home_lat: Optional[float],
    home_lon: Optional[float]
) -> Optional[float]:
    if None in (lat, lon, home_lat, home_lon):
        return None
    return round(calculate_distance(lat, lon, home_lat, home_lon), 2)
