"""Reporting ingress: one passenger ping in, at most one resolved update out.

Flow for a single ping:

1. Validate the payload (``InvalidPingError`` on malformed input).
2. Resolve the vehicle's route; unknown vehicles are dropped untouched.
3. Refresh the reporter's presence inside the vehicle.
4. Ignore pings whose speed disagrees wildly with the vehicle's.
5. Count each reporter once per report window.
6. Record the raw position and buffer the ping.
7. Once the report quorum is met, cluster the buffer into a fix, project it
   onto the route and publish the route's snapshots.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from crowd_localizer import EPS_METERS, MIN_POINTS, CrowdPing, ResolvedFix, detect_vehicle
from live_state import LiveStateRegistry
from presence_ledger import PresenceLedger, calculate_trust
from route_broadcast import RouteBroadcaster
from route_catalog import TransitCatalog
from route_projector import eta_minutes


VEHICLE_CAPACITY = 60
PASSENGERS_PER_REPORT = 2
SPEED_MISMATCH_KMH = 25.0
DEFAULT_RAW_SPEED_KMH = 20.0

STATUS_UNKNOWN_VEHICLE = "unknown_vehicle"
STATUS_SPEED_MISMATCH = "speed_mismatch_ignored"
STATUS_ALREADY_REPORTED = "already_reported"
STATUS_WAITING = "gps_updated_waiting_for_crowd"
STATUS_NO_FIX = "no_fix"
STATUS_DETECTED = "detected"


class InvalidPingError(ValueError):
    """Raised when a crowd ping payload cannot be used."""


def _coordinate(payload: Mapping[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidPingError(f"{key} must be a number")
    value = float(value)
    if not math.isfinite(value):
        raise InvalidPingError(f"{key} must be finite")
    return value


def _identifier(payload: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    raise InvalidPingError(f"{keys[0]} is required")


def parse_ping(payload: Any, now: Optional[float] = None) -> CrowdPing:
    """Validate a raw ping payload into a :class:`CrowdPing`."""
    if not isinstance(payload, Mapping):
        raise InvalidPingError("payload must be an object")
    reporter_id = _identifier(payload, "reporter_id", "user_id")
    vehicle_id = _identifier(payload, "vehicle_id", "bus_id")
    lat = _coordinate(payload, "lat")
    lng = _coordinate(payload, "lng")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise InvalidPingError("lat/lng out of range")

    speed = payload.get("speed")
    if isinstance(speed, bool) or not isinstance(speed, (int, float)) or not math.isfinite(speed):
        speed = None
    return CrowdPing(
        reporter_id=reporter_id,
        vehicle_id=vehicle_id,
        lat=lat,
        lng=lng,
        speed=float(speed) if speed is not None else None,
        received_at=time.time() if now is None else now,
    )


@dataclass
class IngestResult:
    status: str
    vehicle_id: str
    inside_count: int = 0
    report_count: int = 0
    fix: Optional[ResolvedFix] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_UNKNOWN_VEHICLE

    @property
    def detected(self) -> bool:
        return self.fix is not None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": self.ok,
            "status": self.status,
            "vehicle_id": self.vehicle_id,
            "inside_count": self.inside_count,
            "report_count": self.report_count,
            "detected": self.detected,
        }
        if self.fix is not None:
            out["fix"] = self.fix.to_dict()
        return out


class CrowdIngestor:
    def __init__(
        self,
        catalog: TransitCatalog,
        ledger: PresenceLedger,
        registry: LiveStateRegistry,
        broadcaster: Optional[RouteBroadcaster] = None,
        *,
        capacity: int = VEHICLE_CAPACITY,
        passengers_per_report: int = PASSENGERS_PER_REPORT,
        speed_mismatch_kmh: float = SPEED_MISMATCH_KMH,
        eps_m: float = EPS_METERS,
        min_points: int = MIN_POINTS,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.registry = registry
        self.broadcaster = broadcaster
        self.capacity = capacity
        self.passengers_per_report = passengers_per_report
        self.speed_mismatch_kmh = speed_mismatch_kmh
        self.eps_m = eps_m
        self.min_points = min_points

    async def ingest(self, payload: Any, now: Optional[float] = None) -> IngestResult:
        """Run one ping through the pipeline. Only malformed payloads raise."""
        ts = time.time() if now is None else now
        ping = payload if isinstance(payload, CrowdPing) else parse_ping(payload, ts)
        vehicle_id = ping.vehicle_id

        route = self.catalog.route_for_vehicle(vehicle_id)
        if route is None:
            print(f"[ingest] ping for unknown vehicle {vehicle_id} dropped")
            return IngestResult(STATUS_UNKNOWN_VEHICLE, vehicle_id)

        inside = await self.ledger.mark_inside(vehicle_id, ping.reporter_id, ts)

        # compared with the last accepted speed only: riders at a stop are
        # turned away until someone reports a speed near it again
        current = self.registry.get(vehicle_id)
        if current is not None and current.speed and ping.speed is not None:
            if abs(ping.speed - current.speed) > self.speed_mismatch_kmh:
                return IngestResult(STATUS_SPEED_MISMATCH, vehicle_id, inside_count=inside)

        if await self.ledger.has_reported(vehicle_id, ping.reporter_id, ts):
            return IngestResult(STATUS_ALREADY_REPORTED, vehicle_id, inside_count=inside)
        reports = await self.ledger.mark_reported(vehicle_id, ping.reporter_id, ts)

        fix: Optional[ResolvedFix] = None
        async with self.registry.edit(vehicle_id, route.route_id) as live:
            live.lat = ping.lat
            live.lng = ping.lng
            live.speed = ping.speed if ping.speed else DEFAULT_RAW_SPEED_KMH
            live.last_updated = ts
            live.resolved = False
            live.reports_count = reports
            live.record_ping(ping)

            if reports < self.ledger.quorum:
                return IngestResult(STATUS_WAITING, vehicle_id, inside, reports)

            fix = detect_vehicle(live.recent_pings, eps_m=self.eps_m, min_points=self.min_points)
            if fix is None:
                return IngestResult(STATUS_NO_FIX, vehicle_id, inside, reports)

            point = (fix.lat, fix.lng)
            live.lat, live.lng = point
            live.speed = fix.speed
            live.resolved = True
            live.confidence = fix.confidence
            live.crowd_count = fix.crowd_count
            live.spread_m = fix.spread_m
            if route.stops:
                live.eta_to_pickup_min = eta_minutes(route, point, route.stops[0].point, fix.speed)
                live.eta_to_dest_min = eta_minutes(route, point, route.stops[-1].point, fix.speed)
            nearest = route.find_nearest_stop(*point)
            if nearest is not None:
                live.nearest_stop = nearest.name
                live.nearest_stop_id = nearest.stop_id

            passengers = min(self.capacity, reports * self.passengers_per_report)
            live.crowd = min(100, round(passengers / self.capacity * 100)) if self.capacity > 0 else 100
            live.seats_remaining = max(0, self.capacity - passengers)
            live.trust_level, live.trust_confidence = calculate_trust(reports)

        if self.broadcaster is not None:
            self.broadcaster.publish(route.route_id, self.registry.route_payload(route.route_id))
        print(
            f"[ingest] {vehicle_id} resolved from {fix.crowd_count} riders "
            f"({fix.confidence}, spread {fix.spread_m} m)"
        )
        return IngestResult(STATUS_DETECTED, vehicle_id, inside, reports, fix)


__all__ = [
    "VEHICLE_CAPACITY",
    "PASSENGERS_PER_REPORT",
    "SPEED_MISMATCH_KMH",
    "InvalidPingError",
    "parse_ping",
    "IngestResult",
    "CrowdIngestor",
]
