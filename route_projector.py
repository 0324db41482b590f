"""Route-relative projection and ETA.

Projection snaps an arbitrary point onto the closest location along a route
polyline (point-to-segment, clamped) and reports the arc length travelled from
the start of the route up to that location.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from geo_math import LatLng, haversine, ll_to_xy
from route_catalog import Route


# Remaining distance under which a vehicle counts as already at the target
ARRIVED_DISTANCE_KM = 0.03
ARRIVING_ETA_MIN = 0.5

# Bus speed guard rails (km/h)
MIN_ETA_SPEED_KMH = 5.0
MAX_ETA_SPEED_KMH = 60.0
DEFAULT_SPEED_KMH = 25.0


@dataclass(frozen=True)
class Projection:
    lat: float
    lng: float
    distance_from_start_km: float
    offset_m: float  # distance from the query point to the projected point
    segment_index: int


def project(polyline: Sequence[LatLng], point: LatLng) -> Projection:
    """Project ``point`` to the nearest point on the polyline (by segment).

    Each segment is projected in a local tangent plane anchored at its first
    vertex; the globally closest projection wins and ties keep the earliest
    segment.
    """
    p_lat, p_lng = point
    if not polyline:
        return Projection(p_lat, p_lng, 0.0, 0.0, 0)
    if len(polyline) == 1:
        only = polyline[0]
        return Projection(only[0], only[1], 0.0, haversine(only, point), 0)

    best: Optional[Projection] = None
    best_d2 = math.inf
    travelled_m = 0.0
    for i in range(len(polyline) - 1):
        a_lat, a_lng = polyline[i]
        b_lat, b_lng = polyline[i + 1]
        # Local XY in meters with A as origin
        bx, by = ll_to_xy(b_lat, b_lng, a_lat, a_lng)
        px, py = ll_to_xy(p_lat, p_lng, a_lat, a_lng)
        vv = bx*bx + by*by
        t = 0.0 if vv <= 0 else max(0.0, min(1.0, (px*bx + py*by) / vv))
        dx = px - t*bx; dy = py - t*by
        d2 = dx*dx + dy*dy
        seg_len = haversine((a_lat, a_lng), (b_lat, b_lng))
        if d2 < best_d2:
            best_d2 = d2
            best = Projection(
                lat=a_lat + (b_lat - a_lat) * t,
                lng=a_lng + (b_lng - a_lng) * t,
                distance_from_start_km=(travelled_m + t * seg_len) / 1000.0,
                offset_m=math.sqrt(d2),
                segment_index=i,
            )
        travelled_m += seg_len
    if best is None:
        # every segment produced a non-finite distance
        first = polyline[0]
        return Projection(first[0], first[1], 0.0, 0.0, 0)
    return best


def polyline_length_km(polyline: Sequence[LatLng]) -> float:
    total = 0.0
    for i in range(1, len(polyline)):
        total += haversine(polyline[i - 1], polyline[i])
    return total / 1000.0


def interpolate_along_polyline(polyline: Sequence[LatLng], t: float) -> LatLng:
    """Point at fraction ``t`` (0..1) of the polyline's length."""
    if not polyline:
        raise ValueError("empty polyline")
    target_m = max(0.0, min(1.0, t)) * polyline_length_km(polyline) * 1000.0
    for i in range(1, len(polyline)):
        a = polyline[i - 1]; b = polyline[i]
        seg_len = haversine(a, b)
        if target_m <= seg_len:
            f = 0.0 if seg_len == 0 else target_m / seg_len
            return (a[0] + (b[0] - a[0]) * f, a[1] + (b[1] - a[1]) * f)
        target_m -= seg_len
    return polyline[-1]


def remaining_distance_km(route: Route, from_point: LatLng, to_point: LatLng) -> float:
    """Non-negative distance along the route from ``from_point`` to ``to_point``."""
    from_proj = project(route.polyline, from_point)
    to_proj = project(route.polyline, to_point)
    remaining = to_proj.distance_from_start_km - from_proj.distance_from_start_km
    if not math.isfinite(remaining):
        return 0.0
    return max(0.0, remaining)


def clamp_speed_kmh(speed_kmh: Optional[float]) -> float:
    if speed_kmh is None or not math.isfinite(speed_kmh) or speed_kmh <= 0:
        speed_kmh = DEFAULT_SPEED_KMH
    return min(MAX_ETA_SPEED_KMH, max(MIN_ETA_SPEED_KMH, speed_kmh))


def travel_minutes(distance_km: float, speed_kmh: Optional[float]) -> float:
    """Minutes to cover ``distance_km`` at a bus-plausible speed.

    Anything under 30 m is reported as a fixed 0.5 min "arriving" ETA, and no
    positive distance ever reports less than that.
    """
    if distance_km is None or not math.isfinite(distance_km) or distance_km < 0:
        return 0.0
    if distance_km < ARRIVED_DISTANCE_KM:
        return ARRIVING_ETA_MIN
    minutes = (distance_km / clamp_speed_kmh(speed_kmh)) * 60.0
    if not math.isfinite(minutes) or minutes < 0:
        return 0.0
    return max(ARRIVING_ETA_MIN, round(minutes, 1))


def eta_minutes(route: Route, from_point: LatLng, to_point: LatLng, speed_kmh: Optional[float]) -> float:
    """ETA in minutes along ``route`` between two arbitrary points."""
    return travel_minutes(remaining_distance_km(route, from_point, to_point), speed_kmh)


__all__ = [
    "ARRIVED_DISTANCE_KM",
    "ARRIVING_ETA_MIN",
    "MIN_ETA_SPEED_KMH",
    "MAX_ETA_SPEED_KMH",
    "DEFAULT_SPEED_KMH",
    "Projection",
    "project",
    "polyline_length_km",
    "interpolate_along_polyline",
    "remaining_distance_km",
    "clamp_speed_kmh",
    "travel_minutes",
    "eta_minutes",
]
