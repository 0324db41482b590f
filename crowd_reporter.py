"""Synthetic riders posting crowd pings to a running tracker.

Runs its own copy of the fleet simulator and, every interval, posts one ping
per simulated rider to ``{SERVER_URL}/v1/crowd/update``.

$ SERVER_URL=http://localhost:8080 python crowd_reporter.py
"""
import asyncio, os, time
from pathlib import Path
from typing import List

import httpx

from crowd_localizer import CrowdPing
from route_catalog import DEFAULT_ROUTES_CONFIG_PATH, load_transit_catalog
from vehicle_simulator import VehicleSimulator, seeded_random

SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8080").rstrip("/")
INTERVAL_S = float(os.getenv("INTERVAL_S", "3"))
ROUTES_CONFIG_PATH = Path(os.getenv("ROUTES_CONFIG_PATH", str(DEFAULT_ROUTES_CONFIG_PATH)))
MIN_RIDERS = int(os.getenv("MIN_RIDERS", "6"))
MAX_RIDERS = int(os.getenv("MAX_RIDERS", "14"))
HTTP_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def riders_for(vehicle_id: str) -> int:
    """Stable rider count per vehicle so crowding differs across the fleet."""
    span = max(0, MAX_RIDERS - MIN_RIDERS)
    return MIN_RIDERS + int(seeded_random(f"riders_{vehicle_id}") * (span + 1))


def ping_payload(ping: CrowdPing) -> dict:
    return {
        "reporter_id": ping.reporter_id,
        "vehicle_id": ping.vehicle_id,
        "lat": ping.lat,
        "lng": ping.lng,
        "speed": ping.speed,
    }


async def post_ping(client: httpx.AsyncClient, ping: CrowdPing) -> bool:
    try:
        r = await client.post(f"{SERVER_URL}/v1/crowd/update", json=ping_payload(ping))
        r.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"[reporter] ping {ping.reporter_id} -> {ping.vehicle_id} failed: {exc}")
        return False
    return True


async def report_once(client: httpx.AsyncClient, simulator: VehicleSimulator) -> int:
    now = time.time()
    simulator.advance(now)
    pings: List[CrowdPing] = []
    for vehicle_id in simulator.vehicles:
        pings.extend(simulator.crowd_pings(vehicle_id, riders_for(vehicle_id), now=now))
    results = await asyncio.gather(*(post_ping(client, p) for p in pings))
    return sum(1 for ok in results if ok)


async def main():
    catalog = load_transit_catalog(ROUTES_CONFIG_PATH)
    simulator = VehicleSimulator(catalog)
    simulator.initialize()
    print(f"[reporter] posting to {SERVER_URL} every {INTERVAL_S}s")
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
        while True:
            sent = await report_once(client, simulator)
            print(f"[reporter] sent {sent} pings")
            await asyncio.sleep(INTERVAL_S)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
