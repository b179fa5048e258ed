"""Smoke tests for the watering decision loop."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
HUB_SRC = ROOT / "apps" / "hub" / "src"
if str(HUB_SRC) not in sys.path:
    sys.path.append(str(HUB_SRC))

from services.decision import DecisionEngine  # noqa: E402
from services.models import MoistureState, Plant, Pot, Pump  # noqa: E402
from services.state_provider import InMemoryStateProvider  # noqa: E402
from services.strategies import StrategyStore  # noqa: E402


class _Collector:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, destination: str, payload: str) -> None:
        self.sent.append((destination, payload))


def test_bundled_strategies_drive_one_cycle() -> None:
    store = StrategyStore(ROOT / "apps" / "hub" / "data" / "watering_strategies.json")
    config = store.load()
    assert config.active_strategy in config.strategies

    pot = Pot(pot_id="pot-a", pump=Pump(pump_id="3", channel=9))
    plants = [
        Plant(plant_id="p1", moisture_state=MoistureState.THIRSTY, pot=pot),
        Plant(plant_id="p2", moisture_state=MoistureState.OVERWATERED, pot=pot),
    ]
    channel = _Collector()
    engine = DecisionEngine(InMemoryStateProvider(plants), store, channel, mode="remote")

    report = asyncio.run(engine.run_cycle())

    assert report.plant_count == 2
    assert channel.sent == [("actuator.3.water", "[WATER]9 5")]
    assert report.dispatched == [3]
