from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import UTC, datetime, timedelta

import structlog

from ingest.orchestrator import ScrapeOrchestrator
from normalize.alert import to_iso


logger = structlog.get_logger(__name__)


class ScrapeScheduler:
    """Owns the recurring scrape timer.

    Ticks fire on a fixed interval measured from the first tick; a tick that
    arrives while the previous scheduled cycle is still running is skipped.
    On-demand cycles go straight to the orchestrator and do not move the
    timer.
    """

    def __init__(
        self,
        orchestrator: ScrapeOrchestrator,
        *,
        interval_seconds: float,
        initial_delay_seconds: float = 0.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._initial_delay = max(0.0, initial_delay_seconds)
        self._task: asyncio.Task[None] | None = None
        self._cycle_task: asyncio.Task[None] | None = None
        self._next_tick_at: datetime | None = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    @property
    def next_tick_at(self) -> str | None:
        return to_iso(self._next_tick_at) if self._next_tick_at else None

    def status(self) -> dict:
        return {
            "running": self.running,
            "cycleInProgress": self.cycle_in_progress,
            "intervalSeconds": self._interval,
            "nextTickAt": self.next_tick_at,
            "ticks": self.ticks,
            "skipped": self.skipped,
        }

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="scrape-scheduler")
        logger.info(
            "scheduler_started",
            interval_seconds=self._interval,
            initial_delay_seconds=self._initial_delay,
        )

    async def stop(self) -> None:
        for task in (self._task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._task = None
        self._cycle_task = None
        self._next_tick_at = None
        logger.info("scheduler_stopped")

    def tick(self) -> bool:
        """Start one scheduled cycle unless one is still running."""
        self.ticks += 1
        if self.cycle_in_progress:
            self.skipped += 1
            logger.warning("scheduled_cycle_skipped", reason="previous_cycle_running")
            return False
        self._cycle_task = asyncio.create_task(self._run_cycle(), name="scrape-cycle")
        return True

    async def _run_cycle(self) -> None:
        try:
            await self._orchestrator.run_cycle("scheduled")
        except Exception:
            logger.exception("scrape_cycle_crashed")

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        self._next_tick_at = datetime.now(tz=UTC) + timedelta(seconds=self._initial_delay)
        await asyncio.sleep(self._initial_delay)
        started = loop.time()
        n = 0
        while True:
            self.tick()
            n += 1
            delay = max(0.0, started + n * self._interval - loop.time())
            self._next_tick_at = datetime.now(tz=UTC) + timedelta(seconds=delay)
            await asyncio.sleep(delay)
