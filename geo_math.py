"""Spherical geometry helpers shared by every tracking component.

All functions are pure; coordinates are ``(lat, lng)`` tuples in degrees.
"""
from __future__ import annotations

import math
from typing import List, Sequence, Tuple

R_EARTH = 6371000.0

LatLng = Tuple[float, float]


def to_rad(d: float) -> float: return d * math.pi / 180.0


def haversine(a: LatLng, b: LatLng) -> float:
    """Great-circle distance in meters between two lat/lng points."""
    lat1, lon1 = a; lat2, lon2 = b
    dlat = to_rad(lat2 - lat1); dlon = to_rad(lon2 - lon1)
    s = math.sin(dlat/2)**2 + math.cos(to_rad(lat1))*math.cos(to_rad(lat2))*math.sin(dlon/2)**2
    # rounding can push s a hair outside [0, 1] for antipodal points
    s = min(1.0, max(0.0, s))
    return 2 * R_EARTH * math.asin(math.sqrt(s))


def haversine_km(a: LatLng, b: LatLng) -> float:
    return haversine(a, b) / 1000.0


def project_to_local_meters(lat: float, lng: float, ref_lat: float) -> Tuple[float, float]:
    """Equirectangular projection to planar meters around ``ref_lat``.

    Valid for city-scale spans; used to cluster pings in a flat space.
    """
    x = to_rad(lng) * R_EARTH * math.cos(to_rad(ref_lat))
    y = to_rad(lat) * R_EARTH
    return x, y


def ll_to_xy(lat: float, lon: float, ref_lat: float, ref_lon: float) -> Tuple[float, float]:
    """Approximate meters in a local tangent plane using equirectangular scaling.
    Use ref point for origin; good enough for segment-level projection.
    """
    kx = 111320.0 * math.cos(to_rad((lat + ref_lat) * 0.5))
    ky = 110540.0
    return ((lon - ref_lon) * kx, (lat - ref_lat) * ky)


def bearing_between(a: LatLng, b: LatLng) -> float:
    """Initial great-circle bearing from ``a`` to ``b`` in degrees [0, 360).

    0° is north and 90° is east. Identical points give 0.
    """
    if a == b:
        return 0.0
    lat1, lat2 = to_rad(a[0]), to_rad(b[0])
    dlon = to_rad(b[1] - a[1])
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1)*math.sin(lat2) - math.sin(lat1)*math.cos(lat2)*math.cos(dlon)
    deg = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    if not math.isfinite(deg) or deg >= 360.0:
        return 0.0
    return deg


def cumulative_distance(poly: Sequence[LatLng]) -> Tuple[List[float], float]:
    """Cumulative distance in meters at each vertex, plus the total length."""
    cum = [0.0]
    for i in range(1, len(poly)):
        cum.append(cum[-1] + haversine(poly[i-1], poly[i]))
    return cum, cum[-1] if cum else 0.0


__all__ = [
    "R_EARTH",
    "LatLng",
    "to_rad",
    "haversine",
    "haversine_km",
    "project_to_local_meters",
    "ll_to_xy",
    "bearing_between",
    "cumulative_distance",
]
