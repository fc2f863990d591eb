import math
from typing import Iterable, Optional, Tuple

EARTH_RADIUS_METERS = 6_371_000


def haversine_distance(lat1: Optional[float], lon1: Optional[float],
                       lat2: Optional[float], lon2: Optional[float]) -> float:
    """
    Great-circle distance in meters between two coordinates on a spherical Earth.
    Returns 0 when any coordinate is missing.
    """
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return 0.0

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def build_linestring(coordinates: Iterable[Tuple[float, float]]) -> Optional[str]:
    """EWKT LINESTRING from (lon, lat) pairs, or None when there are none."""
    coords = list(coordinates)
    if not coords:
        return None

    # PostGIS rejects single-point linestrings
    if len(coords) == 1:
        coords = coords * 2

    points = ", ".join(f"{lon} {lat}" for lon, lat in coords)
    return f"SRID=4326;LINESTRING({points})"
