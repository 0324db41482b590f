"""Crowd-sourced vehicle localization.

Passengers riding the same vehicle report GPS fixes that scatter around the
true position. The dense core of those reports is the vehicle; isolated
reports (people waiting at the stop, stale devices, bad fixes) are outliers.

``detect_vehicle`` runs DBSCAN over the reports in a local planar projection,
keeps the largest cluster and averages it into a single fix:

1. Fewer than ``MIN_POINTS`` usable pings -> no fix.
2. Project every ping to meters around the first ping's latitude.
3. DBSCAN with ``EPS_METERS`` / ``MIN_POINTS``; no cluster -> no fix.
4. Largest cluster wins (earliest-found on ties). Noise is never averaged.
5. Position = mean lat/lng of the members, rounded to 6 decimals.
6. Speed = mean of member speeds inside the plausible bus band, floored.
7. Confidence tier from the largest member distance to the centroid.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from geo_math import haversine, project_to_local_meters


EPS_METERS = 25.0         # max distance between passengers on one bus
MIN_POINTS = 5            # minimum reports to recognise a bus
MIN_BUS_SPEED_KMH = 3.0
MAX_BUS_SPEED_KMH = 80.0
MIN_DISPLAY_SPEED_KMH = 5.0
HIGH_CONFIDENCE_SPREAD_M = 10.0
MEDIUM_CONFIDENCE_SPREAD_M = 20.0

NOISE = -1


@dataclass
class CrowdPing:
    """One location report from a passenger device."""
    reporter_id: str
    vehicle_id: str
    lat: float
    lng: float
    speed: Optional[float] = None  # km/h as reported by the device
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ResolvedFix:
    lat: float
    lng: float
    speed: float
    crowd_count: int
    confidence: str
    spread_m: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "speed": self.speed,
            "crowd_count": self.crowd_count,
            "confidence": self.confidence,
            "spread_m": self.spread_m,
        }


def _ping_values(ping: Any) -> Optional[Tuple[float, float, Optional[float]]]:
    if isinstance(ping, Mapping):
        lat, lng, speed = ping.get("lat"), ping.get("lng"), ping.get("speed")
    else:
        lat = getattr(ping, "lat", None)
        lng = getattr(ping, "lng", None)
        speed = getattr(ping, "speed", None)
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        return None
    speed_f: Optional[float]
    try:
        speed_f = float(speed) if speed is not None else None
    except (TypeError, ValueError):
        speed_f = None
    return lat_f, lng_f, speed_f


def dbscan(points: Sequence[Tuple[float, float]], eps: float, min_points: int) -> List[List[int]]:
    """Density-based clustering over planar points.

    Returns clusters as lists of point indices in discovery order. A point's
    neighbourhood includes itself; neighbours are strictly closer than
    ``eps``. Border points belong to the first cluster that reaches them.
    """
    n = len(points)
    eps2 = eps * eps

    def region(i: int) -> List[int]:
        xi, yi = points[i]
        out = []
        for j in range(n):
            dx = points[j][0] - xi
            dy = points[j][1] - yi
            if dx*dx + dy*dy < eps2:
                out.append(j)
        return out

    labels: List[Optional[int]] = [None] * n
    clusters: List[List[int]] = []
    for i in range(n):
        if labels[i] is not None:
            continue
        neighbours = region(i)
        if len(neighbours) < min_points:
            labels[i] = NOISE
            continue
        cluster_id = len(clusters)
        cluster = [i]
        labels[i] = cluster_id
        queue = [j for j in neighbours if j != i]
        k = 0
        while k < len(queue):
            j = queue[k]
            k += 1
            if labels[j] == NOISE:
                labels[j] = cluster_id
                cluster.append(j)
                continue
            if labels[j] is not None:
                continue
            labels[j] = cluster_id
            cluster.append(j)
            expansion = region(j)
            if len(expansion) >= min_points:
                queue.extend(x for x in expansion if labels[x] is None or labels[x] == NOISE)
        clusters.append(cluster)
    return clusters


def confidence_for_spread(spread_m: float) -> str:
    if spread_m < HIGH_CONFIDENCE_SPREAD_M:
        return "High"
    if spread_m < MEDIUM_CONFIDENCE_SPREAD_M:
        return "Medium"
    return "Low"


def resolve_speed(speeds: Sequence[Optional[float]]) -> float:
    """Mean of in-band speeds, floored at the minimum display speed."""
    in_band = [
        s for s in speeds
        if s is not None and math.isfinite(s) and MIN_BUS_SPEED_KMH <= s <= MAX_BUS_SPEED_KMH
    ]
    if not in_band:
        return MIN_DISPLAY_SPEED_KMH
    avg = sum(in_band) / len(in_band)
    return max(MIN_DISPLAY_SPEED_KMH, round(avg, 1))


def detect_vehicle(
    pings: Sequence[Any],
    *,
    eps_m: float = EPS_METERS,
    min_points: int = MIN_POINTS,
) -> Optional[ResolvedFix]:
    """Resolve one vehicle position from buffered crowd pings, or ``None``."""
    samples = [v for v in (_ping_values(p) for p in pings) if v is not None]
    if len(samples) < min_points:
        return None

    ref_lat = samples[0][0]
    points = [project_to_local_meters(lat, lng, ref_lat) for lat, lng, _ in samples]
    clusters = dbscan(points, eps_m, min_points)
    if not clusters:
        return None

    main_cluster = clusters[0]
    for cluster in clusters[1:]:
        if len(cluster) > len(main_cluster):
            main_cluster = cluster

    members = [samples[i] for i in main_cluster]
    avg_lat = sum(m[0] for m in members) / len(members)
    avg_lng = sum(m[1] for m in members) / len(members)

    spread = 0.0
    for lat, lng, _ in members:
        spread = max(spread, haversine((avg_lat, avg_lng), (lat, lng)))

    return ResolvedFix(
        lat=round(avg_lat, 6),
        lng=round(avg_lng, 6),
        speed=resolve_speed([m[2] for m in members]),
        crowd_count=len(members),
        confidence=confidence_for_spread(spread),
        spread_m=round(spread, 1),
    )


__all__ = [
    "EPS_METERS",
    "MIN_POINTS",
    "MIN_BUS_SPEED_KMH",
    "MAX_BUS_SPEED_KMH",
    "MIN_DISPLAY_SPEED_KMH",
    "CrowdPing",
    "ResolvedFix",
    "dbscan",
    "confidence_for_spread",
    "resolve_speed",
    "detect_vehicle",
]
