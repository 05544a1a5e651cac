"""
geo.py — Geographic primitives shared by the viewport and cluster engines.

Provides:
    - Coordinate, a validated (lat, lon) point in decimal degrees
    - Planar degree distance scaled to metres (fast, map-scale approximation)
    - Haversine great-circle distance (accurate, slower)
    - Longitude seam handling for rectangles and distances

Planar Approximation
====================
For clustering we only need "are these two markers visually on top of each
other?", so the distance is computed on raw degrees:

    Δφ = φ₂ − φ₁
    Δλ = shortest signed difference of λ₂ − λ₁ across the ±180° seam
    d  = √(Δφ² + Δλ²) · METERS_PER_DEGREE

This overstates east-west distance away from the equator (a degree of
longitude shrinks by cos φ) and is meaningless near the poles. The
haversine variant below is the fallback when that matters.

Haversine Formula
=================
    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c
"""

from __future__ import annotations

import math
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius
METERS_PER_DEGREE: float = 111_320.0  # length of one degree at the equator


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)

    def to_dict(self) -> dict:
        return {"lat": self.latitude, "lon": self.longitude}


ORIGIN = Coordinate(0.0, 0.0)


# ---------------------------------------------------------------------------
# Distances
# ---------------------------------------------------------------------------

def longitude_delta(lon1: float, lon2: float) -> float:
    """
    Signed shortest difference ``lon2 - lon1`` in degrees, in (-180, 180].

    >>> round(longitude_delta(179.9, -179.9), 6)
    0.2
    """
    delta = (lon2 - lon1) % 360.0
    if delta > 180.0:
        delta -= 360.0
    return delta


def planar_distance_m(point1: Coordinate, point2: Coordinate) -> float:
    """
    Approximate distance in metres from raw degree differences.

    Examples
    --------
    >>> round(planar_distance_m(Coordinate(0, 0), Coordinate(0.001, 0)), 2)
    111.32
    """
    d_lat = point2.latitude - point1.latitude
    d_lon = longitude_delta(point1.longitude, point2.longitude)
    return math.hypot(d_lat, d_lon) * METERS_PER_DEGREE


def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Great-circle distance between two points in kilometres,
    rounded to 4 decimal places.

    Examples
    --------
    >>> haversine(Coordinate(13.0827, 80.2707), Coordinate(12.9716, 77.5946))
    290.2122
    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return round(EARTH_RADIUS_KM * c, 4)


def haversine_m(point1: Coordinate, point2: Coordinate) -> float:
    """Great-circle distance in metres."""
    return haversine(point1, point2) * 1000.0


# ---------------------------------------------------------------------------
# Rectangles
# ---------------------------------------------------------------------------

def inside_rectangle(
    lat: float, lon: float,
    south: float, north: float,
    west: float, east: float,
) -> bool:
    """
    Inclusive rectangle check. A rectangle whose ``west`` edge lies east
    of its ``east`` edge crosses the antimeridian.
    """
    if not (south <= lat <= north):
        return False
    if west <= east:
        return west <= lon <= east
    return lon >= west or lon <= east
