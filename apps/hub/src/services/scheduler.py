from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from services.decision import DecisionEngine

logger = logging.getLogger("greenhouse.hub.scheduler")


class DecisionScheduler:
    """Fires DecisionEngine.run_cycle on a fixed cadence, one cycle at a time."""

    def __init__(self, engine: DecisionEngine, *, interval_seconds: float = 5.0) -> None:
        self._engine = engine
        self._interval_seconds = max(0.05, float(interval_seconds))
        self._task: Optional[asyncio.Task[None]] = None
        self._stop: Optional[asyncio.Event] = None
        self.ticks = 0
        self.skipped_ticks = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="decision-scheduler")
        logger.info("Decision scheduler started (interval=%.1fs)", self._interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        stop_event = self._stop
        if stop_event is not None:
            stop_event.set()
        task = self._task
        self._task = None
        self._stop = None
        try:
            await task
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            pass
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.warning("Decision scheduler terminated with error: %s", exc)
        else:
            logger.info("Decision scheduler stopped")

    async def close(self) -> None:
        await self.stop()

    async def tick(self) -> bool:
        """Run one cycle unless another is still in flight. Returns True if a cycle ran."""
        self.ticks += 1
        if self._engine.busy:
            self.skipped_ticks += 1
            logger.info("Previous decision cycle still running; skipping this tick")
            return False
        try:
            await self._engine.run_cycle()
        except Exception as exc:
            logger.warning("Decision cycle failed: %s", exc, exc_info=True)
        return True

    async def _loop(self) -> None:
        assert self._stop is not None
        stop_event = self._stop
        next_tick = time.monotonic()
        while not stop_event.is_set():
            await self.tick()
            if stop_event.is_set():
                break
            # stay on the fixed-rate grid; ticks missed by a long cycle are dropped
            now = time.monotonic()
            next_tick += self._interval_seconds
            if next_tick < now:
                missed = int((now - next_tick) // self._interval_seconds) + 1
                self.skipped_ticks += missed
                next_tick += missed * self._interval_seconds
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                continue
        logger.debug("Decision scheduler loop exiting")


__all__ = ["DecisionScheduler"]
