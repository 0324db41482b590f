import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from presence_ledger import ExpiringSet, PresenceLedger, calculate_trust


def test_expiring_set_refresh_and_expiry():
    members = ExpiringSet(ttl_s=10)
    assert members.add("a", now=0) is True
    assert members.add("a", now=5) is False  # refresh extends to 15
    assert members.contains("a", now=12)
    assert members.count(now=14.9) == 1
    assert members.count(now=15) == 0
    assert members.is_empty(now=20)


def test_mark_inside_and_reported_are_idempotent():
    async def scenario():
        ledger = PresenceLedger()
        assert await ledger.mark_inside("BUS_1", "u1", now=100) == 1
        assert await ledger.mark_inside("BUS_1", "u1", now=101) == 1
        assert await ledger.mark_reported("BUS_1", "u1", now=100) == 1
        assert await ledger.mark_reported("BUS_1", "u1", now=101) == 1
        return (
            await ledger.inside_count("BUS_1", now=102),
            await ledger.report_count("BUS_1", now=102),
        )

    assert asyncio.run(scenario()) == (1, 1)


def test_inside_and_report_windows_expire_independently():
    async def scenario():
        ledger = PresenceLedger(inside_ttl_s=120, report_ttl_s=600)
        await ledger.mark_inside("BUS_1", "u1", now=0)
        await ledger.mark_reported("BUS_1", "u1", now=0)
        after_presence = (
            await ledger.is_inside("BUS_1", "u1", now=130),
            await ledger.has_reported("BUS_1", "u1", now=130),
        )
        after_reports = await ledger.report_count("BUS_1", now=601)
        return after_presence, after_reports

    (inside, reported), reports_later = asyncio.run(scenario())
    assert inside is False
    assert reported is True
    assert reports_later == 0


def test_quorum_counts_distinct_reporters():
    async def scenario():
        ledger = PresenceLedger(quorum=5)
        for i in range(4):
            await ledger.mark_reported("BUS_1", f"u{i}", now=10)
        await ledger.mark_reported("BUS_1", "u0", now=11)
        below = await ledger.has_quorum("BUS_1", now=12)
        await ledger.mark_reported("BUS_1", "u4", now=12)
        return below, await ledger.has_quorum("BUS_1", now=12)

    assert asyncio.run(scenario()) == (False, True)


def test_reporter_moves_between_vehicles():
    async def scenario():
        ledger = PresenceLedger()
        await ledger.mark_inside("BUS_1", "u1", now=0)
        await ledger.mark_inside("BUS_2", "u1", now=5)
        return (
            await ledger.inside_count("BUS_1", now=6),
            await ledger.inside_count("BUS_2", now=6),
        )

    assert asyncio.run(scenario()) == (0, 1)


def test_concurrent_marks_for_one_vehicle_lose_nothing():
    async def scenario():
        ledger = PresenceLedger()
        await asyncio.gather(*(ledger.mark_reported("BUS_1", f"u{i}", now=1) for i in range(50)))
        await asyncio.gather(*(ledger.mark_reported("BUS_1", f"u{i}", now=1) for i in range(50)))
        return await ledger.report_count("BUS_1", now=2)

    assert asyncio.run(scenario()) == 50


def test_unknown_vehicle_counts_are_zero():
    async def scenario():
        ledger = PresenceLedger()
        return await ledger.inside_count("nope", now=0), await ledger.has_reported("nope", "u", now=0)

    assert asyncio.run(scenario()) == (0, False)


def test_collect_garbage_drops_fully_expired_vehicles():
    async def scenario():
        ledger = PresenceLedger(inside_ttl_s=10, report_ttl_s=20)
        await ledger.mark_inside("BUS_1", "u1", now=0)
        await ledger.mark_reported("BUS_1", "u1", now=0)
        await ledger.mark_inside("BUS_2", "u2", now=15)
        return ledger.collect_garbage(now=21), await ledger.inside_count("BUS_2", now=21)

    dropped, remaining = asyncio.run(scenario())
    assert dropped == 1
    assert remaining == 1


def test_calculate_trust_tiers():
    assert calculate_trust(0) == ("Low", 20)
    assert calculate_trust(4) == ("Low", 20)
    assert calculate_trust(5) == ("Medium", 60)
    assert calculate_trust(9) == ("Medium", 70)
    assert calculate_trust(10) == ("High", 95)
    assert calculate_trust(30) == ("High", 95)
