"""Periodic refresh and daily backup timers.

Both loops run as asyncio tasks in the serving process and go through the
RefreshCoordinator, so a timer tick that coincides with a request-triggered
refresh joins it instead of starting another browser run.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable

from src.substitutions.logging import get_logger
from src.substitutions.orchestrator import RefreshCoordinator
from src.substitutions.school_calendar import seconds_until

logger = get_logger(__name__)


class Scheduler:
    """Runs the refresh loop and the backup loop until stopped."""

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        *,
        refresh_interval_seconds: float = 600,
        backup_hour: int = 3,
        tz_name: str = "Europe/Berlin",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.refresh_interval_seconds = refresh_interval_seconds
        self.backup_hour = backup_hour
        self.tz_name = tz_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: list[asyncio.Task] = []

    async def refresh_job(self) -> None:
        """One timer-triggered refresh. Errors are logged, never raised."""
        try:
            report = await self.coordinator.trigger()
        except Exception as e:
            logger.error("scheduled_refresh_failed", error=str(e), type=type(e).__name__)
            return
        logger.info(
            "scheduled_refresh_done",
            stored=[day.isoformat() for day in report.stored_dates],
        )

    async def backup_job(self) -> None:
        """One daily backup pass. Errors are logged, never raised."""
        try:
            await self.coordinator.backup()
        except Exception as e:
            logger.error("scheduled_backup_failed", error=str(e), type=type(e).__name__)

    def seconds_until_backup(self) -> float:
        return seconds_until(self.clock(), self.backup_hour, self.tz_name)

    async def _refresh_loop(self) -> None:
        while True:
            await self.refresh_job()
            await asyncio.sleep(self.refresh_interval_seconds)

    async def _backup_loop(self) -> None:
        while True:
            delay = self.seconds_until_backup()
            logger.info("backup_scheduled", in_seconds=round(delay))
            await asyncio.sleep(delay)
            await self.backup_job()

    def start(self) -> None:
        """Start both loops; the first refresh runs immediately."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._refresh_loop(), name="refresh-loop"),
            asyncio.create_task(self._backup_loop(), name="backup-loop"),
        ]
        logger.info(
            "scheduler_started",
            refresh_interval_seconds=self.refresh_interval_seconds,
            backup_hour=self.backup_hour,
            timezone=self.tz_name,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_stopped")

    async def run_forever(self) -> None:
        """Start the loops and wait on them until cancelled."""
        self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()
