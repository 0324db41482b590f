"""Keyed live-update fan-out.

Every accepted update publishes the full set of a route's vehicle snapshots
under the route id. Subscribers get bounded queues of pre-encoded SSE frames;
slow subscribers simply miss updates. External transports can register a sink
callable. Publishing is best-effort and never raises into the caller.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set


SUBSCRIBER_QUEUE_SIZE = 10

RouteSink = Callable[[str, List[Dict[str, Any]]], Any]


def encode_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class RouteBroadcaster:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subs: Dict[str, Set[asyncio.Queue]] = {}
        self._latest: Dict[str, str] = {}
        self._sinks: List[RouteSink] = []

    def add_sink(self, sink: RouteSink) -> None:
        self._sinks.append(sink)

    def subscribe(self, route_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subs.setdefault(route_id, set()).add(q)
        return q

    def unsubscribe(self, route_id: str, q: asyncio.Queue) -> None:
        subs = self._subs.get(route_id)
        if not subs:
            return
        subs.discard(q)
        if not subs:
            self._subs.pop(route_id, None)

    def subscriber_count(self, route_id: str) -> int:
        return len(self._subs.get(route_id, ()))

    def latest(self, route_id: str) -> Optional[str]:
        return self._latest.get(route_id)

    def publish(self, route_id: str, vehicles: List[Dict[str, Any]]) -> int:
        """Broadcast ``vehicles`` to everyone watching ``route_id``.

        Returns the number of queues that accepted the update.
        """
        data = {"ts": int(time.time() * 1000), "route_id": route_id, "vehicles": vehicles}
        try:
            encoded = encode_sse(data)
        except (TypeError, ValueError) as exc:
            print(f"[broadcast] could not encode update for route {route_id}: {exc}")
            return 0
        self._latest[route_id] = encoded
        delivered = 0
        for q in list(self._subs.get(route_id, ())):
            try:
                q.put_nowait(encoded)
                delivered += 1
            except asyncio.QueueFull:
                pass  # Drop update for slow clients
        for sink in list(self._sinks):
            try:
                sink(route_id, vehicles)
            except Exception as exc:
                print(f"[broadcast] sink failed for route {route_id}: {exc}")
        return delivered

    async def stream(self, route_id: str) -> AsyncIterator[str]:
        """SSE frames for ``route_id``: the latest snapshot first, then live updates."""
        q = self.subscribe(route_id)
        try:
            current = self._latest.get(route_id)
            if current:
                yield current
            while True:
                encoded = await q.get()
                yield encoded
        finally:
            self.unsubscribe(route_id, q)


__all__ = ["SUBSCRIBER_QUEUE_SIZE", "encode_sse", "RouteBroadcaster"]
