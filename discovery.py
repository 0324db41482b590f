from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from live_state import LiveStateRegistry, VehicleLiveState
from ranking_engine import rank
from route_catalog import Route, Stop, TransitCatalog
from route_projector import project, travel_minutes


# A vehicle this far beyond the pickup (along the route) has passed it
PASSED_BUFFER_KM = 0.1
ARRIVING_KM = 0.1
DELAY_STATUSES = ("ON_TIME", "SLOW", "DELAYED")


def candidate_status(live: VehicleLiveState, has_passed: bool, distance_to_pickup_km: float) -> str:
    if has_passed:
        return "PASSED"
    if live.dwelling:
        return "AT_STOP"
    if distance_to_pickup_km < ARRIVING_KM:
        return "ARRIVING"
    if live.delay_type in DELAY_STATUSES:
        return live.delay_type
    if live.status in DELAY_STATUSES:
        return live.status
    return "ON_TIME"


def build_candidate(live: VehicleLiveState, route: Route, pickup: Stop, drop: Stop) -> Dict[str, Any]:
    """Pickup/drop-relative view of one vehicle's live record."""
    vehicle_km = project(route.polyline, (live.lat, live.lng)).distance_from_start_km
    pickup_km = project(route.polyline, pickup.point).distance_from_start_km
    drop_km = project(route.polyline, drop.point).distance_from_start_km

    has_passed = vehicle_km > pickup_km + PASSED_BUFFER_KM
    to_pickup_km = max(0.0, pickup_km - vehicle_km)
    to_drop_km = max(0.0, drop_km - vehicle_km)
    speed = live.cruise_speed_kmh or live.speed

    return {
        "vehicle_id": live.vehicle_id,
        "route_id": route.route_id,
        "lat": live.lat,
        "lng": live.lng,
        "speed": round(live.speed),
        "crowd": live.crowd,
        "seats_remaining": live.seats_remaining,
        "reliability": live.reliability,
        "eta_to_pickup_min": 0.0 if has_passed else travel_minutes(to_pickup_km, speed),
        "eta_to_dest_min": travel_minutes(to_drop_km, speed),
        "distance_to_pickup_km": round(to_pickup_km, 2),
        "has_passed": has_passed,
        "status": candidate_status(live, has_passed, to_pickup_km),
        "trust_level": live.trust_level,
        "trust_confidence": live.trust_confidence,
        "nearest_stop": live.nearest_stop,
        "resolved": live.resolved,
        "last_updated": live.last_updated,
    }


def build_candidates(
    catalog: TransitCatalog,
    registry: LiveStateRegistry,
    route_id: str,
    pickup_id: str,
    drop_id: str,
) -> List[Dict[str, Any]]:
    route = catalog.get_route(route_id)
    if route is None:
        return []
    pickup = route.get_stop(pickup_id)
    drop = route.get_stop(drop_id)
    if pickup is None or drop is None:
        return []
    return [
        build_candidate(live, route, pickup, drop)
        for live in registry.snapshot(route.route_id)
        if live.has_position
    ]


def discover(
    catalog: TransitCatalog,
    registry: LiveStateRegistry,
    route_id: str,
    pickup_id: str,
    drop_id: str,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Ranked vehicles for a pickup/drop pair; unknown references give an empty list."""
    ts = time.time() if now is None else now
    return rank(build_candidates(catalog, registry, route_id, pickup_id, drop_id), ts)


__all__ = [
    "PASSED_BUFFER_KM",
    "ARRIVING_KM",
    "candidate_status",
    "build_candidate",
    "build_candidates",
    "discover",
]
