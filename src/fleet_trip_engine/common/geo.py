# fleet_trip_engine/common/geo.py
"""Great-circle helpers shared by the spike filter, segmenter and reconciliation."""

import math
from typing import Final

__all__: list[str] = [
    'EARTH_RADIUS_KM',
    'haversine_km',
    'is_valid_coordinate',
]

EARTH_RADIUS_KM: Final[float] = 6371.0


def haversine_km(
    latitude_1: float,
    longitude_1: float,
    latitude_2: float,
    longitude_2: float,
) -> float:
    """
    Great-circle distance between two WGS84 points in kilometres.

    Args:
        latitude_1: Latitude of the first point in decimal degrees.
        longitude_1: Longitude of the first point in decimal degrees.
        latitude_2: Latitude of the second point in decimal degrees.
        longitude_2: Longitude of the second point in decimal degrees.

    Returns:
        Distance in kilometres (0.0 for identical points).
    """
    if latitude_1 == latitude_2 and longitude_1 == longitude_2:
        return 0.0

    phi_1: float = math.radians(latitude_1)
    phi_2: float = math.radians(latitude_2)
    delta_phi: float = math.radians(latitude_2 - latitude_1)
    delta_lambda: float = math.radians(longitude_2 - longitude_1)

    a: float = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi_1) * math.cos(phi_2) * math.sin(delta_lambda / 2) ** 2
    )
    # Float error can push a marginally above 1 for antipodal points.
    c: float = 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))
    return EARTH_RADIUS_KM * c


def is_valid_coordinate(latitude: float | None, longitude: float | None) -> bool:
    """True when both axes are finite, in range, and not the (0, 0) null fix."""
    if latitude is None or longitude is None:
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return False
    return not (latitude == 0.0 and longitude == 0.0)
