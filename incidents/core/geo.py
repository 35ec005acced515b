"""Small spherical-geometry helpers for incident bounds and distances.

Conventions
- Coordinates are WGS84 degrees, latitude first in every signature.
- Degree/meter conversion uses the flat approximation `1° ≈ 111 km` scaled by
  `cos(latitude)` for longitude. It is only used to widen bounding boxes for
  candidate prefiltering; ranking uses the haversine distance.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = 111_000.0

# Keeps the longitude offset finite near the poles.
_MIN_COS_LAT = 0.01


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def degree_offsets(distance_m: float, latitude: float) -> tuple[float, float]:
    """Return `(d_lat, d_lon)` in degrees covering `distance_m` at `latitude`."""
    if distance_m < 0:
        raise ValueError("distance_m must be non-negative.")
    d_lat = distance_m / METERS_PER_DEGREE
    cos_lat = max(math.cos(math.radians(latitude)), _MIN_COS_LAT)
    d_lon = distance_m / (METERS_PER_DEGREE * cos_lat)
    return d_lat, d_lon


@dataclass(frozen=True, slots=True)
class Bounds:
    """Axis-aligned lat/lon bounding box."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @classmethod
    def of_point(cls, latitude: float, longitude: float) -> "Bounds":
        return cls(latitude, latitude, longitude, longitude)

    @property
    def center(self) -> tuple[float, float]:
        return (self.min_lat + self.max_lat) / 2, (self.min_lon + self.max_lon) / 2

    def including(self, latitude: float, longitude: float) -> "Bounds":
        return Bounds(
            min(self.min_lat, latitude),
            max(self.max_lat, latitude),
            min(self.min_lon, longitude),
            max(self.max_lon, longitude),
        )

    def expanded(self, distance_m: float, latitude: float) -> "Bounds":
        """Grow the box by `distance_m` on every side, measured at `latitude`."""
        d_lat, d_lon = degree_offsets(distance_m, latitude)
        return Bounds(
            self.min_lat - d_lat,
            self.max_lat + d_lat,
            self.min_lon - d_lon,
            self.max_lon + d_lon,
        )

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_lat <= latitude <= self.max_lat
            and self.min_lon <= longitude <= self.max_lon
        )

    def half_span_m(self) -> float:
        """Half of the larger side in meters, longitude scaled at the center latitude."""
        center_lat, _ = self.center
        cos_lat = max(math.cos(math.radians(center_lat)), _MIN_COS_LAT)
        lat_m = (self.max_lat - self.min_lat) * METERS_PER_DEGREE
        lon_m = (self.max_lon - self.min_lon) * METERS_PER_DEGREE * cos_lat
        return max(lat_m, lon_m) * 0.5
