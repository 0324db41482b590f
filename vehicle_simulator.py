"""Synthetic fleet driving vehicles along their routes.

Each simulated vehicle is a small MOVING / DWELLING state machine:

- MOVING: speed = target speed x delay factor + jitter (clamped), remaining
  distance shrinks with elapsed time, the route loops at its end.
- DWELLING: entered within 50 m of a stop not yet served this pass; the
  vehicle holds still until the dwell expires and passengers board/alight.

Vehicle attributes are seeded from the vehicle id so the same fleet always
behaves the same way, while per-tick jitter keeps the traffic lively. Every
tick writes each vehicle's live record (under that vehicle's lock) and
publishes one snapshot per route, exactly like crowd-resolved updates.
"""
from __future__ import annotations

import asyncio
import math
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from crowd_localizer import CrowdPing
from geo_math import bearing_between, haversine_km
from live_state import LiveStateRegistry, VehicleLiveState
from ranking_engine import freshness_score
from route_broadcast import RouteBroadcaster
from route_catalog import Route, Stop, TransitCatalog
from route_projector import interpolate_along_polyline, project, travel_minutes


SIM_TICK_S = 2.0
VEHICLE_CAPACITY = 60

ROUTE_END_KM = 0.05          # loop back when this close to the end
DWELL_RADIUS_KM = 0.05       # dwell when this close to an unserved stop
ARRIVING_KM = 0.2
PASSED_T_BUFFER = 0.02
MIN_SIM_SPEED_KMH = 10.0
MAX_SIM_SPEED_KMH = 55.0
SPEED_JITTER_KMH = 4.0
SPEED_HISTORY_LEN = 20
START_SEGMENT = 0.15         # fraction of route between staggered starts
MAX_START_T = 0.60
PING_JITTER_DEG = 0.0001       # riders sit within ~5 m of the vehicle

RELIABILITY_WEIGHTS = {
    "speed_consistency": 0.25,
    "punctuality": 0.35,
    "freshness": 0.20,
    "dwell": 0.20,
}


@dataclass(frozen=True)
class DelayProfile:
    name: str
    factor_range: Tuple[float, float]       # (base, span) of speed factor
    reliability_range: Tuple[float, float]  # (base, span) of base reliability
    dwell_range_s: Tuple[float, float]      # (base, span) of dwell seconds
    punctuality: int


DELAY_PROFILES: Tuple[DelayProfile, ...] = (
    DelayProfile("ON_TIME", (0.95, 0.10), (80.0, 20.0), (4.0, 4.0), 100),
    DelayProfile("SLOW", (0.70, 0.15), (55.0, 25.0), (7.0, 5.0), 70),
    DelayProfile("DELAYED", (0.45, 0.20), (40.0, 20.0), (10.0, 10.0), 40),
)
PROFILES_BY_NAME: Dict[str, DelayProfile] = {p.name: p for p in DELAY_PROFILES}


def _string_hash(seed: str) -> int:
    h = 0
    for ch in seed:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    # reinterpret as signed 32-bit
    return h - 0x100000000 if h & 0x80000000 else h


def seeded_random(seed: str) -> float:
    """Stable pseudo-random value in [0, 1) derived from ``seed``."""
    x = math.sin(_string_hash(seed)) * 10000
    return x - math.floor(x)


def trust_from_age(age_s: float) -> Tuple[str, int]:
    if age_s < 10:
        return "High", 95
    if age_s < 30:
        return "Medium", 70
    return "Low", 40


def compute_reliability(
    speed_history: List[float], delay_type: str, age_s: float, dwell_count: int
) -> int:
    """Weighted reliability from speed consistency, punctuality, freshness and dwell behaviour."""
    speed_consistency = 100.0
    if len(speed_history) > 5:
        avg = sum(speed_history) / len(speed_history)
        variance = sum((s - avg) ** 2 for s in speed_history) / len(speed_history)
        speed_consistency = max(0.0, 100.0 - math.sqrt(variance) * 5)
    profile = PROFILES_BY_NAME.get(delay_type, DELAY_PROFILES[0])
    dwell = min(100, dwell_count * 20)
    score = (
        speed_consistency * RELIABILITY_WEIGHTS["speed_consistency"]
        + profile.punctuality * RELIABILITY_WEIGHTS["punctuality"]
        + freshness_score(age_s) * RELIABILITY_WEIGHTS["freshness"]
        + dwell * RELIABILITY_WEIGHTS["dwell"]
    )
    return int(round(score))


def derive_status(
    *,
    dwelling: bool,
    distance_to_pickup_km: float,
    past_pickup: bool,
    delay_type: Optional[str],
    arriving_km: float = ARRIVING_KM,
) -> str:
    """Status precedence: AT_STOP > ARRIVING > PASSED > delay category."""
    if dwelling:
        return "AT_STOP"
    if 0 < distance_to_pickup_km < arriving_km:
        return "ARRIVING"
    if past_pickup:
        return "PASSED"
    if delay_type in PROFILES_BY_NAME:
        return delay_type
    return "ON_TIME"


@dataclass
class SimulatedVehicle:
    vehicle_id: str
    route_id: str
    total_route_km: float
    remaining_km: float
    t: float
    speed: float
    target_speed: float
    delay_type: str
    delay_factor: float
    base_reliability: int
    reliability: int
    crowd: int
    passengers: int
    capacity: int
    lat: float
    lng: float
    last_updated: float
    heading: float = 0.0
    seats_remaining: int = 0
    dwell_until: float = 0.0
    dwell_count: int = 0
    dwelled_stops: Set[int] = field(default_factory=set)
    speed_history: Deque[float] = field(default_factory=lambda: deque(maxlen=SPEED_HISTORY_LEN))
    nearest_stop: Optional[str] = None
    nearest_stop_id: Optional[str] = None
    status: str = "ON_TIME"
    eta_to_pickup_min: float = 0.0
    eta_to_dest_min: float = 0.0
    distance_to_pickup_km: float = 0.0
    trust_level: str = "High"
    trust_confidence: int = 95

    @property
    def cruise_speed_kmh(self) -> float:
        return max(MIN_SIM_SPEED_KMH, self.target_speed * self.delay_factor)

    def is_dwelling(self, now: float) -> bool:
        return self.dwell_until > 0 and now < self.dwell_until


def initialize_vehicle(
    vehicle_id: str,
    route: Route,
    index: int = 0,
    *,
    capacity: int = VEHICLE_CAPACITY,
    now: Optional[float] = None,
) -> SimulatedVehicle:
    """Seed a vehicle's attributes and staggered start position on ``route``."""
    ts = time.time() if now is None else now
    total_km = route.length_km
    r_speed = seeded_random(f"speed_{vehicle_id}")
    r_crowd = seeded_random(f"crowd_{vehicle_id}")
    r_rel = seeded_random(f"rel_{vehicle_id}")
    r_pos = seeded_random(f"pos_{vehicle_id}")

    # spread the fleet over the first 60% so it approaches the default pickup
    start_t = min(MAX_START_T, index * START_SEGMENT + r_pos * START_SEGMENT * 0.8)
    remaining = max(0.0, (1 - start_t) * total_km)

    profile = DELAY_PROFILES[index % len(DELAY_PROFILES)]
    delay_factor = profile.factor_range[0] + r_rel * profile.factor_range[1]
    base_reliability = int(round(profile.reliability_range[0] + r_rel * profile.reliability_range[1]))
    base_speed = 25 + r_speed * 20
    passengers = min(capacity - 5, int(3 + r_crowd * 25))
    lat, lng = interpolate_along_polyline(route.polyline, start_t)

    return SimulatedVehicle(
        vehicle_id=vehicle_id,
        route_id=route.route_id,
        total_route_km=total_km,
        remaining_km=remaining,
        t=start_t,
        speed=base_speed,
        target_speed=base_speed,
        delay_type=profile.name,
        delay_factor=delay_factor,
        base_reliability=base_reliability,
        reliability=base_reliability,
        crowd=int(5 + r_crowd * 45),
        passengers=passengers,
        capacity=capacity,
        lat=lat,
        lng=lng,
        seats_remaining=max(0, capacity - passengers),
        last_updated=ts,
    )


def dwell_seconds(delay_type: str, rng: random.Random) -> float:
    profile = PROFILES_BY_NAME.get(delay_type, DELAY_PROFILES[0])
    base, span = profile.dwell_range_s
    return base + rng.random() * span


def step_vehicle(
    vehicle: SimulatedVehicle,
    route: Route,
    *,
    now: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> SimulatedVehicle:
    """Advance ``vehicle`` to ``now``."""
    ts = time.time() if now is None else now
    rng = rng or random.Random()
    delta_s = ts - vehicle.last_updated
    if delta_s <= 0:
        return vehicle

    if vehicle.is_dwelling(ts):
        vehicle.speed = 0.0
        vehicle.last_updated = ts
        return vehicle
    vehicle.dwell_until = 0.0

    speed = vehicle.target_speed * vehicle.delay_factor
    speed += (rng.random() - 0.5) * SPEED_JITTER_KMH
    vehicle.speed = max(MIN_SIM_SPEED_KMH, min(MAX_SIM_SPEED_KMH, speed))
    vehicle.speed_history.append(vehicle.speed)

    travelled_km = (vehicle.speed / 3600.0) * delta_s
    vehicle.remaining_km = max(0.0, vehicle.remaining_km - travelled_km)
    if vehicle.total_route_km > 0:
        vehicle.t = 1 - (vehicle.remaining_km / vehicle.total_route_km)
    else:
        vehicle.t = 0.0

    if vehicle.remaining_km < ROUTE_END_KM:
        vehicle.remaining_km = vehicle.total_route_km
        vehicle.t = 0.0
        vehicle.dwell_count = 0
        vehicle.dwelled_stops.clear()

    prev = (vehicle.lat, vehicle.lng)
    vehicle.lat, vehicle.lng = interpolate_along_polyline(route.polyline, vehicle.t)

    nearest = route.find_nearest_stop(vehicle.lat, vehicle.lng)
    if nearest is not None:
        if haversine_km((vehicle.lat, vehicle.lng), nearest.point) < DWELL_RADIUS_KM:
            stop_index = route.stop_index(nearest.stop_id)
            if stop_index >= 0 and stop_index not in vehicle.dwelled_stops:
                vehicle.dwelled_stops.add(stop_index)
                vehicle.dwell_count += 1
                vehicle.dwell_until = ts + dwell_seconds(vehicle.delay_type, rng)
                vehicle.speed = 0.0
                delta = math.floor((rng.random() - 0.4) * 8)
                vehicle.passengers = max(2, min(vehicle.capacity - 5, vehicle.passengers + delta))
                vehicle.crowd = int(round(vehicle.passengers / vehicle.capacity * 100))
        vehicle.nearest_stop = nearest.name
        vehicle.nearest_stop_id = nearest.stop_id

    if (vehicle.lat, vehicle.lng) != prev:
        vehicle.heading = bearing_between(prev, (vehicle.lat, vehicle.lng))

    vehicle.seats_remaining = max(0, vehicle.capacity - vehicle.passengers)
    vehicle.last_updated = ts
    return vehicle


def default_stop_pair(route: Route) -> Tuple[Optional[Stop], Optional[Stop]]:
    """Pickup/drop used for simulator intelligence.

    The pickup is the first stop beyond the staggered start band, so freshly
    initialised vehicles approach it; the drop is the terminus.
    """
    if not route.stops:
        return None, None
    total = route.length_km
    pickup = route.stops[-1]
    for stop in route.stops:
        if total > 0 and project(route.polyline, stop.point).distance_from_start_km / total >= MAX_START_T:
            pickup = stop
            break
    return pickup, route.stops[-1]


def compute_intelligence(
    vehicle: SimulatedVehicle,
    route: Route,
    pickup_id: Optional[str] = None,
    drop_id: Optional[str] = None,
    *,
    now: Optional[float] = None,
    previous_update: Optional[float] = None,
) -> SimulatedVehicle:
    """Refresh ETA, status, reliability and trust against a pickup/drop pair.

    Update age is measured from ``previous_update`` when given, so a stalled
    tick loop shows up as stale data; otherwise from ``last_updated``.
    """
    ts = time.time() if now is None else now
    total = vehicle.total_route_km
    default_pickup, default_drop = default_stop_pair(route)
    pickup = route.get_stop(pickup_id) or default_pickup

    pickup_t = 0.0
    if pickup is not None and total > 0:
        pickup_t = project(route.polyline, pickup.point).distance_from_start_km / total
    dist_to_pickup = max(0.0, (pickup_t - vehicle.t) * total)
    dist_to_dest = vehicle.remaining_km
    drop = route.get_stop(drop_id) or default_drop
    if drop is not None and total > 0:
        drop_km = project(route.polyline, drop.point).distance_from_start_km
        dist_to_dest = max(0.0, drop_km - vehicle.t * total)

    cruise = vehicle.cruise_speed_kmh
    vehicle.distance_to_pickup_km = round(dist_to_pickup, 2)
    vehicle.eta_to_pickup_min = travel_minutes(dist_to_pickup, cruise)
    vehicle.eta_to_dest_min = travel_minutes(dist_to_dest, cruise)
    vehicle.status = derive_status(
        dwelling=vehicle.is_dwelling(ts),
        distance_to_pickup_km=dist_to_pickup,
        past_pickup=dist_to_pickup == 0 and vehicle.t > pickup_t + PASSED_T_BUFFER,
        delay_type=vehicle.delay_type,
    )

    updated_at = vehicle.last_updated if previous_update is None else previous_update
    age_s = max(0.0, ts - updated_at)
    vehicle.reliability = compute_reliability(
        list(vehicle.speed_history), vehicle.delay_type, age_s, vehicle.dwell_count
    )
    vehicle.trust_level, vehicle.trust_confidence = trust_from_age(age_s)
    return vehicle


def apply_to_live_state(vehicle: SimulatedVehicle, live: VehicleLiveState, now: float) -> None:
    live.route_id = vehicle.route_id
    live.lat = vehicle.lat
    live.lng = vehicle.lng
    live.speed = vehicle.speed
    live.heading = vehicle.heading
    live.crowd = vehicle.crowd
    live.seats_remaining = vehicle.seats_remaining
    live.reliability = vehicle.reliability
    live.trust_level = vehicle.trust_level
    live.trust_confidence = vehicle.trust_confidence
    live.status = vehicle.status
    live.eta_to_pickup_min = vehicle.eta_to_pickup_min
    live.eta_to_dest_min = vehicle.eta_to_dest_min
    live.distance_to_pickup_km = vehicle.distance_to_pickup_km
    live.nearest_stop = vehicle.nearest_stop
    live.nearest_stop_id = vehicle.nearest_stop_id
    live.delay_type = vehicle.delay_type
    live.cruise_speed_kmh = vehicle.cruise_speed_kmh
    live.dwelling = vehicle.is_dwelling(now)
    live.resolved = True
    live.last_updated = vehicle.last_updated


class VehicleSimulator:
    """Drives every fleet vehicle in ``catalog`` and feeds the live registry."""

    def __init__(
        self,
        catalog: TransitCatalog,
        registry: Optional[LiveStateRegistry] = None,
        broadcaster: Optional[RouteBroadcaster] = None,
        *,
        tick_s: float = SIM_TICK_S,
        capacity: int = VEHICLE_CAPACITY,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.catalog = catalog
        self.registry = registry
        self.broadcaster = broadcaster
        self.tick_s = tick_s
        self.capacity = capacity
        self.rng = rng or random.Random()
        self._clock = clock
        self.vehicles: Dict[str, SimulatedVehicle] = {}
        self._reporter_offsets: Dict[str, Tuple[float, float]] = {}

    def initialize(self, now: Optional[float] = None) -> int:
        ts = self._clock() if now is None else now
        by_route: Dict[str, List[str]] = {}
        for vehicle_id, route_id in self.catalog.fleet.items():
            by_route.setdefault(route_id, []).append(vehicle_id)
        for route_id, vehicle_ids in by_route.items():
            route = self.catalog.get_route(route_id)
            if route is None:
                continue
            for index, vehicle_id in enumerate(vehicle_ids):
                self.vehicles[vehicle_id] = initialize_vehicle(
                    vehicle_id, route, index, capacity=self.capacity, now=ts
                )
        print(f"[sim] initialized {len(self.vehicles)} vehicles across {len(by_route)} routes")
        return len(self.vehicles)

    def advance(self, now: Optional[float] = None) -> List[SimulatedVehicle]:
        """Step every vehicle and refresh its intelligence for the default stop pair."""
        ts = self._clock() if now is None else now
        moved: List[SimulatedVehicle] = []
        for vehicle in self.vehicles.values():
            route = self.catalog.get_route(vehicle.route_id)
            if route is None or not route.stops:
                continue
            previous = vehicle.last_updated
            step_vehicle(vehicle, route, now=ts, rng=self.rng)
            compute_intelligence(vehicle, route, now=ts, previous_update=previous)
            moved.append(vehicle)
        return moved

    async def tick(self, now: Optional[float] = None) -> Dict[str, List[dict]]:
        """One simulation step: move, write live records, publish per route."""
        ts = self._clock() if now is None else now
        if not self.vehicles:
            self.initialize(ts)
        moved = self.advance(ts)
        touched: Set[str] = set()
        if self.registry is not None:
            for vehicle in moved:
                async with self.registry.edit(vehicle.vehicle_id, vehicle.route_id) as live:
                    apply_to_live_state(vehicle, live, ts)
                touched.add(vehicle.route_id)
        payloads: Dict[str, List[dict]] = {}
        for route_id in sorted(touched):
            payloads[route_id] = self.registry.route_payload(route_id) if self.registry else []
            if self.broadcaster is not None:
                self.broadcaster.publish(route_id, payloads[route_id])
        return payloads

    async def run(self) -> None:
        """Tick forever at a fixed interval; a failed tick is logged and skipped."""
        print(f"[sim] starting simulation loop every {self.tick_s}s")
        while True:
            start = time.time()
            try:
                await self.tick()
            except Exception as exc:
                print(f"[sim] tick failed: {exc}")
            elapsed = time.time() - start
            await asyncio.sleep(max(0.0, self.tick_s - elapsed))

    def crowd_pings(
        self,
        vehicle_id: str,
        reporter_count: int,
        *,
        now: Optional[float] = None,
    ) -> List[CrowdPing]:
        """Pings a vehicle's riders would send right now.

        Each reporter keeps a stable offset around the vehicle; speeds carry
        a little per-device noise.
        """
        vehicle = self.vehicles.get(vehicle_id)
        if vehicle is None:
            return []
        ts = self._clock() if now is None else now
        pings: List[CrowdPing] = []
        for i in range(reporter_count):
            reporter_id = f"{vehicle_id}_user_{i}"
            offset = self._reporter_offsets.get(reporter_id)
            if offset is None:
                offset = (
                    (self.rng.random() - 0.5) * PING_JITTER_DEG,
                    (self.rng.random() - 0.5) * PING_JITTER_DEG,
                )
                self._reporter_offsets[reporter_id] = offset
            speed = max(0.0, vehicle.speed + (self.rng.random() - 0.5) * 2)
            pings.append(
                CrowdPing(
                    reporter_id=reporter_id,
                    vehicle_id=vehicle_id,
                    lat=vehicle.lat + offset[0],
                    lng=vehicle.lng + offset[1],
                    speed=round(speed, 1),
                    received_at=ts,
                )
            )
        return pings


__all__ = [
    "SIM_TICK_S",
    "VEHICLE_CAPACITY",
    "DelayProfile",
    "DELAY_PROFILES",
    "seeded_random",
    "trust_from_age",
    "compute_reliability",
    "derive_status",
    "SimulatedVehicle",
    "initialize_vehicle",
    "dwell_seconds",
    "step_vehicle",
    "default_stop_pair",
    "compute_intelligence",
    "apply_to_live_state",
    "VehicleSimulator",
]
