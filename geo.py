"""
Geographic helpers for dispatch

- Great-circle distance (haversine)
- Travel time estimate at an average city courier speed
- Coordinate validation
"""

import math
from dataclasses import dataclass
from numbers import Real
from typing import Optional

from errors import ValidationError

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 20.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in kilometers between two lat/lng points"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def travel_time_minutes(distance_km: float, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """Whole minutes to cover distance_km at speed_kmh"""
    return round(distance_km / speed_kmh * 60)


def is_valid_coordinate_pair(lat, lng) -> bool:
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, Real):
            return False
        if math.isnan(value):
            return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def validate_coordinates(lat, lng) -> None:
    """
    Raises:
        ValidationError: If either value is not a number or is out of range
    """
    if not is_valid_coordinate_pair(lat, lng):
        raise ValidationError("Invalid coordinates")


@dataclass
class GeoPoint:
    """Latitude/longitude pair"""
    lat: float
    lng: float

    @classmethod
    def from_columns(cls, lat, lng) -> Optional["GeoPoint"]:
        """Build from nullable Numeric columns; None if either is missing"""
        if lat is None or lng is None:
            return None
        return cls(float(lat), float(lng))

    def distance_to(self, other: "GeoPoint") -> float:
        return haversine_km(self.lat, self.lng, other.lat, other.lng)

    def grid_cell(self, cell_degrees: float = 0.01) -> str:
        """Key of the grid cell containing this point"""
        row = math.floor(self.lat / cell_degrees)
        col = math.floor(self.lng / cell_degrees)
        return f"{row * cell_degrees:.2f},{col * cell_degrees:.2f}"
