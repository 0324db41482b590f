"""Per-vehicle presence and report-window bookkeeping.

Two independent expiring sets are kept for every vehicle:

* ``inside``   - reporters currently riding the vehicle (short TTL, refreshed
  on every ping).
* ``reported`` - reporters that contributed a location report within the
  report window (long TTL). Its cardinality is the quorum count, and a reporter
  can only appear once, so no single device dominates the quorum.

Entries are forgotten purely by TTL; stale entries can only cause an
undercount, never an error.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Hashable, Optional, Tuple


PRESENCE_TTL_S = 120.0
REPORT_TTL_S = 600.0
QUORUM_REPORTS = 5


class ExpiringSet:
    """Set whose members expire independently ``ttl_s`` seconds after their last add."""

    def __init__(self, ttl_s: float):
        self.ttl_s = ttl_s
        self._expiry: Dict[Hashable, float] = {}

    def _prune(self, now: float) -> None:
        expired = [m for m, exp in self._expiry.items() if exp <= now]
        for member in expired:
            del self._expiry[member]

    def add(self, member: Hashable, now: float) -> bool:
        """Add or refresh ``member``. Returns True if it was not already live."""
        self._prune(now)
        is_new = member not in self._expiry
        self._expiry[member] = now + self.ttl_s
        return is_new

    def discard(self, member: Hashable) -> None:
        self._expiry.pop(member, None)

    def contains(self, member: Hashable, now: float) -> bool:
        exp = self._expiry.get(member)
        return exp is not None and exp > now

    def count(self, now: float) -> int:
        self._prune(now)
        return len(self._expiry)

    def is_empty(self, now: float) -> bool:
        return self.count(now) == 0


def calculate_trust(report_count: int) -> Tuple[str, int]:
    """Coarse trust tier and confidence from the number of distinct reports."""
    if report_count >= 10:
        return "High", min(95, 50 + report_count * 5)
    if report_count >= 5:
        return "Medium", min(70, 40 + report_count * 4)
    return "Low", 20


class PresenceLedger:
    """Tracks who is inside each vehicle and who has reported recently.

    Every operation for a given vehicle runs under that vehicle's lock, so
    concurrent marks never lose updates; different vehicles never contend.
    """

    def __init__(
        self,
        *,
        inside_ttl_s: float = PRESENCE_TTL_S,
        report_ttl_s: float = REPORT_TTL_S,
        quorum: int = QUORUM_REPORTS,
        clock: Callable[[], float] = time.time,
    ):
        self.inside_ttl_s = inside_ttl_s
        self.report_ttl_s = report_ttl_s
        self.quorum = quorum
        self._clock = clock
        self._inside: Dict[str, ExpiringSet] = {}
        self._reported: Dict[str, ExpiringSet] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # reporter -> vehicle it was last seen inside
        self._reporter_vehicle: Dict[str, str] = {}

    def _lock_for(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[vehicle_id] = lock
        return lock

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    async def mark_inside(self, vehicle_id: str, reporter_id: str, now: Optional[float] = None) -> int:
        """Add/refresh ``reporter_id`` in the vehicle's inside-set; returns the inside count."""
        ts = self._now(now)
        previous = self._reporter_vehicle.get(reporter_id)
        if previous is not None and previous != vehicle_id:
            # a rider can only be inside one vehicle at a time
            async with self._lock_for(previous):
                old_set = self._inside.get(previous)
                if old_set is not None:
                    old_set.discard(reporter_id)
        async with self._lock_for(vehicle_id):
            members = self._inside.get(vehicle_id)
            if members is None:
                members = ExpiringSet(self.inside_ttl_s)
                self._inside[vehicle_id] = members
            members.add(reporter_id, ts)
            self._reporter_vehicle[reporter_id] = vehicle_id
            return members.count(ts)

    async def mark_reported(self, vehicle_id: str, reporter_id: str, now: Optional[float] = None) -> int:
        """Add ``reporter_id`` to the vehicle's report window; returns the report count."""
        ts = self._now(now)
        async with self._lock_for(vehicle_id):
            members = self._reported.get(vehicle_id)
            if members is None:
                members = ExpiringSet(self.report_ttl_s)
                self._reported[vehicle_id] = members
            members.add(reporter_id, ts)
            return members.count(ts)

    async def inside_count(self, vehicle_id: str, now: Optional[float] = None) -> int:
        ts = self._now(now)
        async with self._lock_for(vehicle_id):
            members = self._inside.get(vehicle_id)
            return members.count(ts) if members is not None else 0

    async def report_count(self, vehicle_id: str, now: Optional[float] = None) -> int:
        ts = self._now(now)
        async with self._lock_for(vehicle_id):
            members = self._reported.get(vehicle_id)
            return members.count(ts) if members is not None else 0

    async def is_inside(self, vehicle_id: str, reporter_id: str, now: Optional[float] = None) -> bool:
        ts = self._now(now)
        async with self._lock_for(vehicle_id):
            members = self._inside.get(vehicle_id)
            return members is not None and members.contains(reporter_id, ts)

    async def has_reported(self, vehicle_id: str, reporter_id: str, now: Optional[float] = None) -> bool:
        ts = self._now(now)
        async with self._lock_for(vehicle_id):
            members = self._reported.get(vehicle_id)
            return members is not None and members.contains(reporter_id, ts)

    async def has_quorum(self, vehicle_id: str, now: Optional[float] = None) -> bool:
        return await self.report_count(vehicle_id, now) >= self.quorum

    def collect_garbage(self, now: Optional[float] = None) -> int:
        """Forget vehicles whose sets have fully expired. Returns how many were dropped."""
        ts = self._now(now)
        dropped = 0
        for vehicle_id in list(self._locks):
            lock = self._locks[vehicle_id]
            if lock.locked():
                continue
            inside = self._inside.get(vehicle_id)
            reported = self._reported.get(vehicle_id)
            if (inside is None or inside.is_empty(ts)) and (reported is None or reported.is_empty(ts)):
                self._inside.pop(vehicle_id, None)
                self._reported.pop(vehicle_id, None)
                self._locks.pop(vehicle_id, None)
                dropped += 1
        for reporter_id, vehicle_id in list(self._reporter_vehicle.items()):
            if vehicle_id not in self._inside:
                del self._reporter_vehicle[reporter_id]
        return dropped


__all__ = [
    "PRESENCE_TTL_S",
    "REPORT_TTL_S",
    "QUORUM_REPORTS",
    "ExpiringSet",
    "calculate_trust",
    "PresenceLedger",
]
