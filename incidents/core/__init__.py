"""Core shared helpers for incident geometry."""

from .geo import (
    EARTH_RADIUS_M,
    METERS_PER_DEGREE,
    Bounds,
    degree_offsets,
    haversine_m,
)

__all__ = [
    "EARTH_RADIUS_M",
    "METERS_PER_DEGREE",
    "Bounds",
    "degree_offsets",
    "haversine_m",
]
