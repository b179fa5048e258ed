"""One watering decision cycle: snapshot, per-pot duration, dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import uuid4

from config import settings
from services.actuation import ActuationChannel, DeliveryError
from services.models import ActuationCommand, MoistureState, Plant, Pot, PumpConversionError
from services.state_provider import PlantStateProvider
from services.strategies import StrategyNotFoundError, StrategyStore, WateringStrategy

logger = logging.getLogger("greenhouse.hub.decision")

REMOTE_MODE = "remote"


def _utc_now_iso() -> str:
    iso = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return iso.replace("+00:00", "Z")


def reduce_pot_duration(durations: Iterable[int]) -> int:
    """Collapse per-plant durations into the duration for their shared pot.

    The shortest strictly positive duration wins so a mixed pot is watered
    just enough for the plant that needs it. When nothing is positive the
    minimum of all values is returned, which callers treat as "skip".
    """
    values = list(durations)
    if not values:
        return 0
    positives = [value for value in values if value > 0]
    if positives:
        return min(positives)
    return min(values)


@dataclass(frozen=True, slots=True)
class SkippedPot:
    pot_id: str
    reason: str

    def to_payload(self) -> dict[str, str]:
        return {"potId": self.pot_id, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class PlantDecision:
    plant_id: str
    pot_id: Optional[str]
    moisture_state: MoistureState
    duration_seconds: int

    def to_payload(self) -> dict[str, object]:
        return {
            "plantId": self.plant_id,
            "potId": self.pot_id,
            "moistureState": self.moisture_state.value,
            "wateringDuration": self.duration_seconds,
        }


@dataclass(slots=True)
class CycleReport:
    cycle_id: str
    mode: str
    started_at: str
    finished_at: Optional[str] = None
    strategy: Optional[str] = None
    plant_count: int = 0
    commands: list[ActuationCommand] = field(default_factory=list)
    skipped: list[SkippedPot] = field(default_factory=list)
    dispatch_attempted: bool = False
    dispatched: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    def skip(self, pot_id: str, reason: str) -> None:
        self.skipped.append(SkippedPot(pot_id=pot_id, reason=reason))

    def to_payload(self) -> dict[str, object]:
        return {
            "cycleId": self.cycle_id,
            "mode": self.mode,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "strategy": self.strategy,
            "plantCount": self.plant_count,
            "commands": [command.to_payload() for command in self.commands],
            "skipped": [entry.to_payload() for entry in self.skipped],
            "dispatchAttempted": self.dispatch_attempted,
            "dispatched": list(self.dispatched),
            "failed": list(self.failed),
        }


class DecisionEngine:
    def __init__(
        self,
        provider: PlantStateProvider,
        store: StrategyStore,
        channel: ActuationChannel,
        *,
        mode: str | None = None,
        dispatch_timeout: float = 5.0,
    ) -> None:
        self._provider = provider
        self._store = store
        self._channel = channel
        self._mode = mode
        self._dispatch_timeout = max(float(dispatch_timeout), 0.01)
        self._cycle_lock = asyncio.Lock()
        self._last_report: Optional[CycleReport] = None

    @property
    def mode(self) -> str:
        return self._mode if self._mode is not None else settings.mode

    @property
    def busy(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._last_report

    async def run_cycle(self) -> CycleReport:
        # a manual trigger arriving mid-cycle waits for the running one
        async with self._cycle_lock:
            report = await self._run_cycle_locked()
        self._last_report = report
        return report

    async def preview(self) -> list[PlantDecision]:
        plants = await self._fetch_plants()
        strategy = self._resolve_strategy()
        return [
            PlantDecision(
                plant_id=plant.plant_id,
                pot_id=plant.pot_id,
                moisture_state=plant.moisture_state,
                duration_seconds=self._plant_duration(strategy, plant),
            )
            for plant in plants
        ]

    def plan(self, plants: Iterable[Plant], report: CycleReport | None = None) -> list[ActuationCommand]:
        strategy = self._resolve_strategy()
        if report is not None and strategy is not None:
            report.strategy = getattr(strategy, "key", None)

        groups: dict[str, list[Plant]] = {}
        pots: dict[str, Pot] = {}
        for plant in plants:
            if plant.pot is None:
                logger.warning("Plant %s has no pot; skipping", plant.plant_id)
                continue
            groups.setdefault(plant.pot.pot_id, []).append(plant)
            pots.setdefault(plant.pot.pot_id, plant.pot)

        commands: list[ActuationCommand] = []
        for pot_id, members in groups.items():
            durations = [self._plant_duration(strategy, plant) for plant in members]
            duration = reduce_pot_duration(durations)
            if duration <= 0:
                logger.debug("Pot %s needs no water (durations=%s)", pot_id, durations)
                if report is not None:
                    report.skip(pot_id, "no watering needed")
                continue

            command = self._build_command(pots[pot_id], duration)
            if command is None:
                if report is not None:
                    report.skip(pot_id, "pump not addressable")
                continue
            logger.info("Pot %s: durations=%s -> water %ss", pot_id, durations, duration)
            commands.append(command)
        return commands

    async def _run_cycle_locked(self) -> CycleReport:
        report = CycleReport(cycle_id=uuid4().hex[:12], mode=self.mode, started_at=_utc_now_iso())
        logger.info("Decision cycle %s started (mode=%s)", report.cycle_id, report.mode)

        plants = await self._fetch_plants()
        report.plant_count = len(plants)
        if not plants:
            logger.info("Decision cycle %s: no plants available, nothing to do", report.cycle_id)
        else:
            report.commands = self.plan(plants, report)
            await self._dispatch(report)

        report.finished_at = _utc_now_iso()
        logger.info(
            "Decision cycle %s finished: %d command(s), %d dispatched, %d failed",
            report.cycle_id,
            len(report.commands),
            len(report.dispatched),
            len(report.failed),
        )
        return report

    async def _fetch_plants(self) -> list[Plant]:
        try:
            plants = await self._provider.list_plants()
        except Exception as exc:
            logger.warning("Plant state provider unavailable: %s", exc, exc_info=True)
            return []
        return list(plants or [])

    def _resolve_strategy(self) -> Optional[WateringStrategy]:
        try:
            return self._store.active_strategy()
        except StrategyNotFoundError as exc:
            logger.warning("No active watering strategy (%s); all durations fall back to 0", exc)
            return None

    @staticmethod
    def _plant_duration(strategy: Optional[WateringStrategy], plant: Plant) -> int:
        if strategy is None:
            return 0
        try:
            return int(strategy.duration(plant.moisture_state, plant))
        except Exception as exc:
            logger.warning(
                "Duration computation failed for plant %s (state=%s): %s",
                plant.plant_id,
                plant.moisture_state,
                exc,
            )
            return 0

    @staticmethod
    def _build_command(pot: Pot, duration: int) -> Optional[ActuationCommand]:
        pump = pot.pump
        if pump is None:
            logger.warning("Pot %s has no pump; skipping", pot.pot_id)
            return None
        try:
            channel = pump.channel_number()
            pump_id = pump.actuator_id()
        except PumpConversionError as exc:
            logger.warning("Pot %s skipped, pump %s not addressable: %s", pot.pot_id, pump.pump_id, exc)
            return None
        return ActuationCommand(pot_id=pot.pot_id, pump_id=pump_id, channel=channel, duration_seconds=duration)

    async def _dispatch(self, report: CycleReport) -> None:
        commands = report.commands
        if not commands:
            return
        if report.mode != REMOTE_MODE:
            for command in commands:
                logger.info("Mode %s: not sending %r to %s", report.mode, command.payload, command.destination)
            return

        report.dispatch_attempted = True
        results = await asyncio.gather(*(self._send(command) for command in commands))
        for command, delivered in zip(commands, results):
            if delivered:
                report.dispatched.append(command.pump_id)
            else:
                report.failed.append(command.pump_id)

    async def _send(self, command: ActuationCommand) -> bool:
        logger.info("Water cmd %r -> %s", command.payload, command.destination)
        try:
            await asyncio.wait_for(
                self._channel.send(command.destination, command.payload),
                timeout=self._dispatch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Dispatch to pump %s timed out after %.1fs", command.pump_id, self._dispatch_timeout
            )
            return False
        except DeliveryError as exc:
            logger.warning("Dispatch to pump %s failed: %s", command.pump_id, exc)
            return False
        except Exception as exc:
            logger.warning("Dispatch to pump %s failed unexpectedly: %s", command.pump_id, exc, exc_info=True)
            return False
        return True


__all__ = [
    "CycleReport",
    "DecisionEngine",
    "PlantDecision",
    "SkippedPot",
    "reduce_pot_duration",
]
