"""Countdown scheduler driving mission ticks."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .models import MissionState
from .service import SquadService

logger = logging.getLogger(__name__)


class CountdownScheduler:
    """Runs one interval job that ticks the active mission while it assembles."""

    JOB_ID = "mission-countdown"

    def __init__(
        self,
        service: SquadService,
        *,
        interval_seconds: Optional[float] = None,
        on_tick: Optional[Callable[[Optional[timedelta]], None]] = None,
        refresh_each_tick: bool = False,
    ) -> None:
        self.service = service
        self.interval_seconds = interval_seconds or service.settings.tick_interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._on_tick = on_tick
        self._refresh_each_tick = refresh_each_tick
        self._finished = asyncio.Event()
        self._running = False

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def start(self) -> None:
        """Schedule the countdown job; must be called from a running event loop."""

        self.scheduler = AsyncIOScheduler(
            timezone=timezone.utc,
            event_loop=asyncio.get_running_loop(),
        )
        self.scheduler.add_job(
            self._tick,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.start()
        self._running = True
        logger.info("Countdown scheduler started (every %.2fs)", self.interval_seconds)

    def shutdown(self) -> None:
        if not self._running or self.scheduler is None:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Countdown scheduler stopped")

    async def _tick(self) -> None:
        if self._refresh_each_tick:
            self.service.refresh()
        remaining = await self.service.tick()
        if self._on_tick is not None:
            self._on_tick(remaining)
        if self.service.missions.state is not MissionState.ASSEMBLING:
            self._finished.set()

    async def run_until_settled(self) -> None:
        """Tick until the active mission leaves the assembling state."""

        if self.service.missions.state is not MissionState.ASSEMBLING:
            return
        self.start()
        try:
            await self._finished.wait()
        finally:
            self.shutdown()


__all__ = ["AsyncIOScheduler", "CountdownScheduler"]
