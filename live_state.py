from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from crowd_localizer import CrowdPing


PING_BUFFER_SIZE = 50


@dataclass
class VehicleLiveState:
    """The authoritative live record for one vehicle.

    Created on the first accepted ping or simulator tick and mutated in place
    afterwards. Only :meth:`LiveStateRegistry.edit` hands out a mutable copy.
    """
    vehicle_id: str
    route_id: Optional[str]
    lat: Optional[float] = None
    lng: Optional[float] = None
    speed: float = 0.0  # km/h
    heading: float = 0.0
    crowd: int = 0  # percent of capacity
    seats_remaining: int = 0
    reliability: int = 50
    trust_level: str = "Low"
    trust_confidence: int = 20
    status: str = "ON_TIME"
    eta_to_pickup_min: Optional[float] = None
    eta_to_dest_min: Optional[float] = None
    distance_to_pickup_km: Optional[float] = None
    nearest_stop: Optional[str] = None
    nearest_stop_id: Optional[str] = None
    last_updated: float = 0.0  # epoch seconds
    # True only when lat/lng came from a clustered crowd fix or the simulator
    resolved: bool = False
    confidence: Optional[str] = None
    crowd_count: int = 0
    spread_m: Optional[float] = None
    reports_count: int = 0
    delay_type: Optional[str] = None
    cruise_speed_kmh: Optional[float] = None  # stable speed used for ETAs
    dwelling: bool = False
    recent_pings: Deque[CrowdPing] = field(
        default_factory=lambda: deque(maxlen=PING_BUFFER_SIZE), repr=False
    )

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lng is not None

    def record_ping(self, ping: CrowdPing) -> None:
        # deque(maxlen) evicts the oldest ping first
        self.recent_pings.append(ping)

    def copy(self) -> "VehicleLiveState":
        """Detached snapshot without the ping buffer."""
        return dataclasses.replace(self, recent_pings=deque(maxlen=self.recent_pings.maxlen))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "route_id": self.route_id,
            "lat": self.lat,
            "lng": self.lng,
            "speed": round(self.speed),
            "heading": round(self.heading, 1),
            "crowd": self.crowd,
            "seats_remaining": self.seats_remaining,
            "reliability": self.reliability,
            "trust_level": self.trust_level,
            "trust_confidence": self.trust_confidence,
            "status": self.status,
            "eta_to_pickup_min": self.eta_to_pickup_min,
            "eta_to_dest_min": self.eta_to_dest_min,
            "distance_to_pickup_km": self.distance_to_pickup_km,
            "nearest_stop": self.nearest_stop,
            "nearest_stop_id": self.nearest_stop_id,
            "resolved": self.resolved,
            "confidence": self.confidence,
            "crowd_count": self.crowd_count,
            "reports_count": self.reports_count,
            "delay_type": self.delay_type,
            "last_updated": self.last_updated,
        }


class LiveStateRegistry:
    """Process-wide owner of every :class:`VehicleLiveState`.

    Writes go through :meth:`edit`, which serializes updates per vehicle.
    Reads return detached copies so scoring never holds a lock.
    """

    def __init__(self, buffer_size: int = PING_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._states: Dict[str, VehicleLiveState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[vehicle_id] = lock
        return lock

    @asynccontextmanager
    async def edit(self, vehicle_id: str, route_id: Optional[str] = None) -> AsyncIterator[VehicleLiveState]:
        """Hold ``vehicle_id``'s write lock and yield its live record, creating it if needed."""
        async with self._lock_for(vehicle_id):
            live = self._states.get(vehicle_id)
            if live is None:
                live = VehicleLiveState(
                    vehicle_id=vehicle_id,
                    route_id=route_id,
                    last_updated=time.time(),
                    recent_pings=deque(maxlen=self.buffer_size),
                )
                self._states[vehicle_id] = live
            elif route_id is not None:
                live.route_id = route_id
            yield live

    def get(self, vehicle_id: str) -> Optional[VehicleLiveState]:
        live = self._states.get(vehicle_id)
        return live.copy() if live is not None else None

    def recent_pings(self, vehicle_id: str) -> List[CrowdPing]:
        live = self._states.get(vehicle_id)
        return list(live.recent_pings) if live is not None else []

    def snapshot(self, route_id: Optional[str] = None) -> List[VehicleLiveState]:
        return [
            live.copy()
            for live in list(self._states.values())
            if route_id is None or live.route_id == route_id
        ]

    def route_payload(self, route_id: str) -> List[Dict[str, Any]]:
        return [live.to_dict() for live in self.snapshot(route_id) if live.has_position]

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, vehicle_id: object) -> bool:
        return vehicle_id in self._states


__all__ = ["PING_BUFFER_SIZE", "VehicleLiveState", "LiveStateRegistry"]
