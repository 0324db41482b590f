import asyncio
import json
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from crowd_ingest import CrowdIngestor, InvalidPingError, parse_ping
from geo_math import haversine
from live_state import LiveStateRegistry
from presence_ledger import PresenceLedger
from route_broadcast import RouteBroadcaster
from route_catalog import Route, Stop, TransitCatalog

CENTER = (28.6300, 77.2200)
# ~4-5 m offsets around the center
OFFSETS = [(0.0, 0.0), (0.00004, 0.0), (-0.00004, 0.0), (0.0, 0.00004), (0.0, -0.00004), (0.00002, 0.00002)]


def _catalog():
    stop_lats = [28.6200, 28.6300, 28.6350, 28.6400]
    stops = [Stop(f"S{i}", f"Stop {i}", lat, CENTER[1]) for i, lat in enumerate(stop_lats)]
    route = Route.build("R1", "Test line", stops, [(28.6200, CENTER[1]), (28.6400, CENTER[1])])
    return TransitCatalog([route], {"BUS_101": "R1"})


def _pipeline(broadcaster=None):
    registry = LiveStateRegistry()
    ledger = PresenceLedger(quorum=5)
    broadcaster = broadcaster or RouteBroadcaster()
    ingestor = CrowdIngestor(_catalog(), ledger, registry, broadcaster)
    return ingestor, ledger, registry, broadcaster


def _payload(i, speed=20.0, vehicle_id="BUS_101", offset=None):
    dlat, dlng = offset if offset is not None else OFFSETS[i % len(OFFSETS)]
    return {
        "reporter_id": f"rider-{i}",
        "vehicle_id": vehicle_id,
        "lat": CENTER[0] + dlat,
        "lng": CENTER[1] + dlng,
        "speed": speed,
    }


@pytest.mark.parametrize(
    "payload",
    [
        {"vehicle_id": "BUS_101", "lat": 28.63, "lng": 77.22},
        {"reporter_id": "u", "lat": 28.63, "lng": 77.22},
        {"reporter_id": "  ", "vehicle_id": "BUS_101", "lat": 28.63, "lng": 77.22},
        {"reporter_id": "u", "vehicle_id": "BUS_101", "lat": "28.63", "lng": 77.22},
        {"reporter_id": "u", "vehicle_id": "BUS_101", "lat": True, "lng": 77.22},
        {"reporter_id": "u", "vehicle_id": "BUS_101", "lat": float("nan"), "lng": 77.22},
        {"reporter_id": "u", "vehicle_id": "BUS_101", "lat": 128.63, "lng": 77.22},
        {"reporter_id": "u", "vehicle_id": "BUS_101", "lat": 28.63},
        ["not", "a", "mapping"],
    ],
)
def test_parse_ping_rejects_malformed_payloads(payload):
    with pytest.raises(InvalidPingError):
        parse_ping(payload, now=1.0)


def test_parse_ping_accepts_aliases_and_drops_bad_speed():
    ping = parse_ping({"user_id": "u1", "bus_id": "BUS_101", "lat": 28.63, "lng": 77, "speed": "fast"}, now=7.0)
    assert (ping.reporter_id, ping.vehicle_id) == ("u1", "BUS_101")
    assert ping.lng == 77.0
    assert ping.speed is None
    assert ping.received_at == 7.0


def test_unknown_vehicle_is_dropped_without_state_change():
    ingestor, ledger, registry, _ = _pipeline()

    async def scenario():
        result = await ingestor.ingest(_payload(0, vehicle_id="GHOST"), now=10.0)
        return result, await ledger.inside_count("GHOST", now=10.0)

    result, inside = asyncio.run(scenario())
    assert result.status == "unknown_vehicle"
    assert result.ok is False
    assert inside == 0
    assert "GHOST" not in registry


def test_below_quorum_keeps_raw_position_only():
    ingestor, ledger, registry, broadcaster = _pipeline()

    async def scenario():
        results = []
        for i in range(4):
            results.append(await ingestor.ingest(_payload(i), now=10.0 + i))
        return results

    results = asyncio.run(scenario())
    assert [r.status for r in results] == ["gps_updated_waiting_for_crowd"] * 4
    assert results[-1].report_count == 4
    live = registry.get("BUS_101")
    assert live.resolved is False
    assert (live.lat, live.lng) == (CENTER[0], CENTER[1] + 0.00004)
    assert len(registry.recent_pings("BUS_101")) == 4
    assert broadcaster.latest("R1") is None


def test_repeat_reporter_counts_once():
    ingestor, ledger, _, _ = _pipeline()

    async def scenario():
        first = await ingestor.ingest(_payload(0), now=10.0)
        second = await ingestor.ingest(_payload(0), now=11.0)
        return first, second, await ledger.report_count("BUS_101", now=12.0)

    first, second, reports = asyncio.run(scenario())
    assert first.status == "gps_updated_waiting_for_crowd"
    assert second.status == "already_reported"
    assert second.inside_count == 1
    assert reports == 1


def test_speed_mismatch_is_ignored():
    ingestor, ledger, registry, _ = _pipeline()

    async def scenario():
        await ingestor.ingest(_payload(0, speed=20.0), now=10.0)
        result = await ingestor.ingest(_payload(1, speed=60.0), now=11.0)
        return result, await ledger.has_reported("BUS_101", "rider-1", now=12.0)

    result, reported = asyncio.run(scenario())
    assert result.status == "speed_mismatch_ignored"
    assert result.inside_count == 2
    assert reported is False
    assert len(registry.recent_pings("BUS_101")) == 1


def test_stopped_riders_are_turned_away_after_a_fast_ping():
    ingestor, _, registry, _ = _pipeline()

    async def scenario():
        results = [await ingestor.ingest(_payload(0, speed=40.0), now=10.0)]
        for i in range(1, 4):
            results.append(await ingestor.ingest(_payload(i, speed=0.0), now=10.0 + i))
        results.append(await ingestor.ingest(_payload(4, speed=30.0), now=15.0))
        return results

    results = asyncio.run(scenario())
    assert [r.status for r in results] == (
        ["gps_updated_waiting_for_crowd"]
        + ["speed_mismatch_ignored"] * 3
        + ["gps_updated_waiting_for_crowd"]
    )
    assert results[-1].report_count == 2
    assert registry.get("BUS_101").speed == 30.0


def test_six_riders_resolve_the_vehicle_and_publish():
    ingestor, _, registry, broadcaster = _pipeline()
    speeds = [19.0, 20.0, 21.0, 20.0, 20.0, 20.0]

    async def scenario():
        return [await ingestor.ingest(_payload(i, speed=s), now=100.0 + i) for i, s in enumerate(speeds)]

    results = asyncio.run(scenario())
    assert [r.status for r in results[:4]] == ["gps_updated_waiting_for_crowd"] * 4
    assert results[4].status == "detected"
    assert results[4].fix.crowd_count == 5

    final = results[5]
    assert final.status == "detected"
    assert final.fix.crowd_count == 6
    assert final.fix.confidence == "High"
    assert 18.0 <= final.fix.speed <= 22.0
    assert haversine((final.fix.lat, final.fix.lng), CENTER) < 5.0

    live = registry.get("BUS_101")
    assert live.resolved is True
    assert (live.lat, live.lng) == (final.fix.lat, final.fix.lng)
    assert live.crowd == 20  # 6 reports x 2 riders over 60 seats
    assert live.seats_remaining == 48
    assert (live.trust_level, live.trust_confidence) == ("Medium", 64)
    assert live.nearest_stop_id == "S1"
    # ~1.1 km to the terminus at 20 km/h
    assert live.eta_to_dest_min == pytest.approx(3.3, abs=0.1)

    frame = broadcaster.latest("R1")
    vehicles = json.loads(frame[len("data: "):])["vehicles"]
    assert [v["vehicle_id"] for v in vehicles] == ["BUS_101"]
    assert vehicles[0]["resolved"] is True


def test_scattered_reports_reach_quorum_without_a_fix():
    ingestor, _, registry, _ = _pipeline()

    async def scenario():
        results = []
        for i in range(5):
            # riders ~100 m apart along the road
            results.append(await ingestor.ingest(_payload(i, offset=(0.0009 * i, 0.0)), now=10.0 + i))
        return results

    results = asyncio.run(scenario())
    assert results[-1].status == "no_fix"
    assert results[-1].detected is False
    assert registry.get("BUS_101").resolved is False


def test_failing_sink_never_fails_ingestion():
    broadcaster = RouteBroadcaster()

    def broken_sink(route_id, vehicles):
        raise RuntimeError("transport down")

    broadcaster.add_sink(broken_sink)
    ingestor, _, _, _ = _pipeline(broadcaster)

    async def scenario():
        return [await ingestor.ingest(_payload(i), now=10.0 + i) for i in range(5)]

    results = asyncio.run(scenario())
    assert results[-1].status == "detected"
    assert results[-1].to_dict()["fix"]["crowd_count"] == 5
