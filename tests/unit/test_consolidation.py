"""
Unit tests for consolidation steps and the background scheduler.

Uses a fake engine so timing is controlled by the test.
"""

import asyncio

import pytest

from agent_memory.memory.consolidation import ConsolidationScheduler, run_steps

pytestmark = pytest.mark.asyncio


class FakeEngine:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    async def consolidate(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("store offline")

        async def ok():
            return self.calls

        return await run_steps("fake", [("count", ok)])


# ============================================================================
# run_steps
# ============================================================================

async def test_failing_step_does_not_stop_others():
    ran = []

    async def first():
        ran.append("first")
        return 1

    async def broken():
        raise ValueError("bad step")

    async def last():
        ran.append("last")
        return 3

    report = await run_steps("semantic", [("first", first), ("broken", broken), ("last", last)])

    assert ran == ["first", "last"]
    assert report.ok is False
    assert report.failed_steps == ["broken"]
    assert report.step("broken").error == "bad step"
    assert report.step("last").result == 3
    assert report.finished_at is not None
    assert report.to_dict()["engine"] == "semantic"


async def test_empty_steps_are_ok():
    report = await run_steps("procedural", [])
    assert report.ok
    assert report.steps == []


# ============================================================================
# Scheduler
# ============================================================================

async def test_run_once_records_report():
    engine = FakeEngine()
    scheduler = ConsolidationScheduler(engine, interval_seconds=60)

    report = await scheduler.run_once()

    assert report.ok
    assert scheduler.runs == 1
    assert scheduler.last_report is report
    assert scheduler.status()["last_ok"] is True


async def test_loop_runs_periodically_and_stops():
    engine = FakeEngine()
    scheduler = ConsolidationScheduler(engine, interval_seconds=0.01)

    scheduler.start()
    scheduler.start()  # no-op while running
    assert scheduler.running
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert not scheduler.running
    assert engine.calls >= 2
    assert scheduler.runs == engine.calls


async def test_loop_survives_failing_run():
    engine = FakeEngine(fail=True)
    scheduler = ConsolidationScheduler(engine, interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.06)
    assert scheduler.running
    await scheduler.stop()

    assert engine.calls >= 2
    assert scheduler.runs == 0


async def test_stop_without_start():
    scheduler = ConsolidationScheduler(FakeEngine(), interval_seconds=1)
    await scheduler.stop()
    assert scheduler.status()["running"] is False


async def test_invalid_interval():
    with pytest.raises(ValueError):
        ConsolidationScheduler(FakeEngine(), interval_seconds=0)
