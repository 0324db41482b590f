"""
Crowd Transit Tracker - live vehicle API (FastAPI)

Purpose
=======
Fuse crowd-sourced GPS pings from riders into live vehicle positions, project
them along fixed routes for ETAs, and rank the vehicles approaching a rider's
pickup stop.

Key features
------------
- Presence/quorum bookkeeping before any crowd fix is trusted.
- DBSCAN consensus over each vehicle's recent pings.
- Route-relative ETA and pickup/drop discovery with ranked, labelled results.
- Built-in fleet simulator driving the same live-state pipeline.
- REST endpoints + Server-Sent Events (SSE) stream per route.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import asyncio, os, time
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from crowd_ingest import CrowdIngestor, InvalidPingError
from discovery import discover
from live_state import LiveStateRegistry
from presence_ledger import PresenceLedger
from route_broadcast import RouteBroadcaster
from route_catalog import DEFAULT_ROUTES_CONFIG_PATH, TransitCatalog, load_transit_catalog
from vehicle_simulator import VehicleSimulator


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------
# Config
# ---------------------------
ROUTES_CONFIG_PATH = Path(os.getenv("ROUTES_CONFIG_PATH", str(DEFAULT_ROUTES_CONFIG_PATH)))
CROWD_EPS_METERS = float(os.getenv("CROWD_EPS_METERS", "25"))
CROWD_MIN_POINTS = int(os.getenv("CROWD_MIN_POINTS", "5"))
QUORUM_REPORTS = int(os.getenv("QUORUM_REPORTS", "5"))
PRESENCE_TTL_S = float(os.getenv("PRESENCE_TTL_S", "120"))
REPORT_TTL_S = float(os.getenv("REPORT_TTL_S", "600"))
VEHICLE_CAPACITY = int(os.getenv("VEHICLE_CAPACITY", "60"))
PASSENGERS_PER_REPORT = int(os.getenv("PASSENGERS_PER_REPORT", "2"))
SPEED_MISMATCH_KMH = float(os.getenv("SPEED_MISMATCH_KMH", "25"))
PING_BUFFER_SIZE = int(os.getenv("PING_BUFFER_SIZE", "50"))
SIM_TICK_S = float(os.getenv("SIM_TICK_S", "2"))
SIMULATION_ENABLED = _env_flag("SIMULATION_ENABLED", "1")
# How often expired presence entries are dropped
PRESENCE_GC_S = float(os.getenv("PRESENCE_GC_S", "60"))


# ---------------------------
# App & state
# ---------------------------
class State:
    def __init__(self, catalog: TransitCatalog):
        self.catalog = catalog
        self.ledger = PresenceLedger(
            inside_ttl_s=PRESENCE_TTL_S,
            report_ttl_s=REPORT_TTL_S,
            quorum=QUORUM_REPORTS,
        )
        self.registry = LiveStateRegistry(buffer_size=PING_BUFFER_SIZE)
        self.broadcaster = RouteBroadcaster()
        self.ingestor = CrowdIngestor(
            catalog,
            self.ledger,
            self.registry,
            self.broadcaster,
            capacity=VEHICLE_CAPACITY,
            passengers_per_report=PASSENGERS_PER_REPORT,
            speed_mismatch_kmh=SPEED_MISMATCH_KMH,
            eps_m=CROWD_EPS_METERS,
            min_points=CROWD_MIN_POINTS,
        )
        self.simulator = VehicleSimulator(
            catalog,
            self.registry,
            self.broadcaster,
            tick_s=SIM_TICK_S,
            capacity=VEHICLE_CAPACITY,
        )
        self.started_at = time.time()
        self.tasks: List[asyncio.Task] = []


state = State(load_transit_catalog(ROUTES_CONFIG_PATH))

app = FastAPI(title="Crowd Transit Tracker")


async def presence_gc_loop() -> None:
    while True:
        await asyncio.sleep(PRESENCE_GC_S)
        dropped = state.ledger.collect_garbage()
        if dropped:
            print(f"[presence] dropped {dropped} idle vehicles")


@app.on_event("startup")
async def start_background_tasks() -> None:
    state.tasks.append(asyncio.create_task(presence_gc_loop()))
    if SIMULATION_ENABLED:
        state.simulator.initialize()
        state.tasks.append(asyncio.create_task(state.simulator.run()))
    else:
        print("[sim] simulation disabled")


@app.on_event("shutdown")
async def stop_background_tasks() -> None:
    tasks, state.tasks = state.tasks, []
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


# ---------------------------
# REST: Health & routes
# ---------------------------
@app.get("/v1/health")
async def health():
    return {
        "ok": True,
        "routes": len(state.catalog.routes),
        "vehicles": len(state.registry),
        "simulation": SIMULATION_ENABLED,
        "uptime_s": round(time.time() - state.started_at, 1),
    }


@app.get("/v1/routes")
async def list_routes():
    return state.catalog.list_routes()


@app.get("/v1/routes/{route_id}")
async def get_route(route_id: str):
    route = state.catalog.get_route(route_id)
    if route is None:
        raise HTTPException(404, "route not found")
    return route.to_dict()


# ---------------------------
# REST: Live vehicles & discovery
# ---------------------------
@app.get("/v1/vehicles")
async def list_vehicles(route_id: Optional[str] = Query(None)):
    return [live.to_dict() for live in state.registry.snapshot(route_id) if live.has_position]


@app.get("/v1/discover")
async def discover_vehicles(
    route_id: Optional[str] = Query(None),
    pickup_id: Optional[str] = Query(None),
    drop_id: Optional[str] = Query(None),
):
    if not route_id or not pickup_id or not drop_id:
        raise HTTPException(status_code=400, detail="route_id, pickup_id and drop_id are required")
    return discover(state.catalog, state.registry, route_id, pickup_id, drop_id)


# ---------------------------
# REST: Crowd reporting
# ---------------------------
@app.post("/v1/crowd/update")
async def crowd_update(payload: Any = Body(...)):
    try:
        result = await state.ingestor.ingest(payload)
    except InvalidPingError as exc:
        raise HTTPException(status_code=400, detail=f"invalid ping: {exc}") from exc
    return result.to_dict()


@app.get("/v1/presence/check")
async def presence_check(reporter_id: str = Query(...), vehicle_id: str = Query(...)):
    return {
        "reporter_id": reporter_id,
        "vehicle_id": vehicle_id,
        "inside": await state.ledger.is_inside(vehicle_id, reporter_id),
        "reported": await state.ledger.has_reported(vehicle_id, reporter_id),
        "inside_count": await state.ledger.inside_count(vehicle_id),
        "report_count": await state.ledger.report_count(vehicle_id),
    }


# ---------------------------
# SSE: Route vehicle updates
# ---------------------------
@app.get("/v1/stream/routes/{route_id}")
async def stream_route(route_id: str):
    if state.catalog.get_route(route_id) is None:
        raise HTTPException(404, "route not found")
    return StreamingResponse(state.broadcaster.stream(route_id), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
