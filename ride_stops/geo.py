"""Great-circle geometry on lat/lon degrees (Haversine, spherical Earth)."""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

LatLon = Tuple[float, float]
BoundingBox = Tuple[float, float, float, float]

EARTH_RADIUS_M = 6_371_000.0

# Metres per degree of latitude on the sphere above.
_METERS_PER_DEGREE = math.pi * EARTH_RADIUS_M / 180.0


def distance_meters(a: LatLon, b: LatLon) -> float:
    """Haversine distance in metres between two ``(lat, lon)`` points."""

    lat1, lon1 = a
    lat2, lon2 = b
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    h = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    c = 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))
    return EARTH_RADIUS_M * c


def bearing_degrees(a: LatLon, b: LatLon) -> float:
    """Initial bearing (forward azimuth) from ``a`` to ``b`` in ``[0, 360)``.

    0 is north, 90 east, 180 south, 270 west.
    """

    lat1, lon1 = a
    lat2, lon2 = b
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lambda = math.radians(lon2 - lon1)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    bearing = math.degrees(math.atan2(y, x)) % 360.0
    # -0.0 % 360 and values rounding up to 360.0 both fold back to 0.
    return 0.0 if bearing >= 360.0 else bearing + 0.0


def bearing_delta(b1: float, b2: float) -> float:
    """Smallest absolute angle between two bearings, in ``[0, 180]``."""

    diff = abs(b1 - b2) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def distances_meters(
    origin: LatLon,
    lats: Sequence[float] | NDArray[np.float64],
    lons: Sequence[float] | NDArray[np.float64],
) -> NDArray[np.float64]:
    """Vectorized Haversine distance from ``origin`` to many points."""

    lat_arr = np.asarray(lats, dtype=float)
    lon_arr = np.asarray(lons, dtype=float)
    if lat_arr.shape != lon_arr.shape:
        raise ValueError("Latitude and longitude arrays must have the same shape")
    if lat_arr.size == 0:
        return np.empty(0, dtype=float)
    lat0, lon0 = origin
    phi1 = math.radians(lat0)
    phi2 = np.radians(lat_arr)
    d_phi = phi2 - phi1
    d_lambda = np.radians(lon_arr - lon0)
    h = np.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * np.cos(phi2) * np.sin(
        d_lambda / 2.0
    ) ** 2
    c = 2.0 * np.arctan2(np.sqrt(h), np.sqrt(1.0 - h))
    return EARTH_RADIUS_M * c


def bounding_box(center: LatLon, radius_m: float) -> BoundingBox:
    """Return ``(min_lat, max_lat, min_lon, max_lon)`` enclosing a circle.

    Only a pre-filter: callers must still check the exact distance. Near the
    poles the longitude span widens to the full range.
    """

    lat, lon = center
    d_lat = radius_m / _METERS_PER_DEGREE
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        d_lon = 180.0
    else:
        d_lon = min(180.0, d_lat / cos_lat)
    # Pad slightly so points sitting exactly on the radius survive the box.
    pad = 1.01
    return (
        lat - d_lat * pad,
        lat + d_lat * pad,
        lon - d_lon * pad,
        lon + d_lon * pad,
    )


__all__ = [
    "EARTH_RADIUS_M",
    "LatLon",
    "BoundingBox",
    "distance_meters",
    "bearing_degrees",
    "bearing_delta",
    "distances_meters",
    "bounding_box",
]
