from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import RecordingChannel, make_plant
from services.decision import DecisionEngine
from services.models import MoistureState
from services.scheduler import DecisionScheduler
from services.state_provider import InMemoryStateProvider
from services.strategies import StrategyStore


class StubEngine:
    def __init__(self, *, busy: bool = False, error: Exception | None = None) -> None:
        self.busy = busy
        self.calls = 0
        self._error = error

    async def run_cycle(self):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return None


@pytest.mark.anyio
async def test_tick_skips_while_cycle_in_flight() -> None:
    engine = StubEngine(busy=True)
    scheduler = DecisionScheduler(engine, interval_seconds=1.0)

    ran = await scheduler.tick()

    assert ran is False
    assert engine.calls == 0
    assert scheduler.ticks == 1
    assert scheduler.skipped_ticks == 1


@pytest.mark.anyio
async def test_tick_survives_cycle_errors() -> None:
    engine = SimpleNamespace(busy=False, run_cycle=AsyncMock(side_effect=RuntimeError("boom")))
    scheduler = DecisionScheduler(engine, interval_seconds=1.0)

    assert await scheduler.tick() is True
    assert await scheduler.tick() is True
    assert engine.run_cycle.await_count == 2


def test_interval_has_a_floor() -> None:
    scheduler = DecisionScheduler(StubEngine(), interval_seconds=0)
    assert scheduler.interval_seconds == pytest.approx(0.05)


@pytest.mark.anyio
async def test_loop_fires_repeatedly_until_stopped() -> None:
    engine = StubEngine()
    scheduler = DecisionScheduler(engine, interval_seconds=0.05)

    await scheduler.start()
    assert scheduler.running is True
    await asyncio.sleep(0.22)
    await scheduler.stop()

    assert scheduler.running is False
    assert engine.calls >= 3
    calls = engine.calls
    await asyncio.sleep(0.1)
    assert engine.calls == calls


@pytest.mark.anyio
async def test_start_is_idempotent() -> None:
    scheduler = DecisionScheduler(StubEngine(), interval_seconds=0.05)
    await scheduler.start()
    task = scheduler._task
    await scheduler.start()
    assert scheduler._task is task
    await scheduler.close()
    await scheduler.close()


@pytest.mark.anyio
async def test_loop_keeps_running_after_failed_cycle() -> None:
    engine = StubEngine(error=ValueError("provider exploded"))
    scheduler = DecisionScheduler(engine, interval_seconds=0.05)

    await scheduler.start()
    await asyncio.sleep(0.17)
    assert scheduler.running is True
    await scheduler.stop()

    assert engine.calls >= 2


@pytest.mark.anyio
async def test_slow_cycle_drops_ticks_instead_of_overlapping(store: StrategyStore) -> None:
    active = 0
    max_active = 0

    class SlowProvider(InMemoryStateProvider):
        async def list_plants(self):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            try:
                await asyncio.sleep(0.12)
            finally:
                active -= 1
            return [make_plant("a", MoistureState.THIRSTY)]

    channel = RecordingChannel()
    engine = DecisionEngine(SlowProvider(), store, channel, mode="remote")
    scheduler = DecisionScheduler(engine, interval_seconds=0.05)

    await scheduler.start()
    await asyncio.sleep(0.3)
    await scheduler.stop()

    assert max_active == 1
    assert scheduler.skipped_ticks >= 1
    assert len(channel.sent) >= 1
