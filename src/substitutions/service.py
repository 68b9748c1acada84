"""Read API for the substitution cache and the wiring of its parts.

SubstitutionService is what an HTTP layer calls: one day by date, or the whole
retained window. Reads are served from the CacheStore; a day that is not
cached at all triggers one (shared) refresh before an empty view is returned.
"""

from datetime import date, datetime
from typing import Callable

from src.substitutions.config import MonitorConfig
from src.substitutions.fetcher import FetcherPool, PlaywrightFetcherPool
from src.substitutions.logging import get_logger
from src.substitutions.models import CacheRecordView, RefreshReport, WindowDate, WindowView
from src.substitutions.orchestrator import RefreshCoordinator, RefreshOrchestrator
from src.substitutions.scheduler import Scheduler
from src.substitutions.store import CacheStore

logger = get_logger(__name__)


class SubstitutionService:
    """Cache, refresh and scheduling for one monitor source."""

    def __init__(
        self,
        config: MonitorConfig,
        pool: FetcherPool | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.store = CacheStore(config.cache_dir)
        self.orchestrator = RefreshOrchestrator(
            self.store,
            pool if pool is not None else PlaywrightFetcherPool(config),
            config,
            clock=clock,
        )
        self.coordinator = RefreshCoordinator(self.orchestrator)
        self.store.on_miss = self.coordinator.trigger
        self.scheduler = Scheduler(
            self.coordinator,
            refresh_interval_seconds=config.refresh_interval_seconds,
            backup_hour=config.backup_hour,
            tz_name=config.timezone,
            clock=clock,
        )

    async def get_for_date(self, day: date) -> CacheRecordView:
        record = await self.store.get(day)
        return CacheRecordView.from_record(day, record)

    async def get_window(self) -> WindowView:
        """Return every retained day, refreshing first if nothing is cached."""
        today = self.orchestrator.reference_day()
        days = self.store.retained_dates(today, self.config.window_size)
        if not days:
            try:
                await self.coordinator.trigger()
            except Exception as e:
                logger.error("window_refresh_failed", error=str(e))
            days = self.store.retained_dates(today, self.config.window_size)

        entries = [await self.get_for_date(day) for day in days]
        dates = [WindowDate(day=view.day, date_text=view.date_text) for view in entries]
        return WindowView(entries=entries, dates=dates)

    async def refresh(self) -> RefreshReport:
        return await self.coordinator.trigger()

    async def backup(self) -> list[date]:
        return await self.coordinator.backup()

    async def serve(self) -> None:
        """Run the refresh and backup timers until cancelled."""
        await self.scheduler.run_forever()
