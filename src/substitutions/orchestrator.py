"""Refresh of the cached substitution window.

RefreshOrchestrator renders one monitor view per window slot in parallel,
retries transient failures, keys every result by the date the page actually
displayed and writes the accepted records into the CacheStore.

RefreshCoordinator owns the single in-flight run. Timer ticks, backup passes
and cache misses all go through trigger(); a call that arrives while a run is
active waits for that run and receives the same report.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from src.substitutions.config import MonitorConfig
from src.substitutions.errors import (
    ParseError,
    StorageError,
    TransientFetchError,
    Unreachable,
)
from src.substitutions.fetcher import FetcherPool, PageFetcher
from src.substitutions.logging import get_logger
from src.substitutions.models import (
    FetchResult,
    Readiness,
    RefreshReport,
    ScrapedRecord,
    SlotOutcome,
    SlotStatus,
)
from src.substitutions.school_calendar import (
    next_school_days,
    parse_date_label,
    reference_day,
)
from src.substitutions.store import CacheStore

logger = get_logger(__name__)

_EMPTY_SIGNALS = frozenset({Readiness.EMPTY_TABLE, Readiness.EMPTY_INDICATOR})


@dataclass(frozen=True)
class Keyed:
    """A fetch result whose date label named an actual date."""

    actual_date: date
    result: FetchResult


@dataclass(frozen=True)
class Unkeyed:
    """A fetch result that cannot be stored: its date label did not parse."""

    error: ParseError
    result: FetchResult


def key_result(result: FetchResult) -> Keyed | Unkeyed:
    actual_date = parse_date_label(result.date_label)
    if actual_date is None:
        return Unkeyed(ParseError(f"Unparseable date label {result.date_label!r}"), result)
    return Keyed(actual_date, result)


def validate_result(result: FetchResult, url: str) -> FetchResult:
    """Accept rows, an explicit "no data" page, or an ambiguous timeout.

    Raises:
        TransientFetchError: Rows were rendered but none could be extracted.
    """
    if result.rows or result.readiness in _EMPTY_SIGNALS:
        return result
    if result.readiness is Readiness.TIMEOUT:
        logger.warning("readiness_ambiguous", url=url, action="stored_as_empty")
        return result
    raise TransientFetchError(f"Rows rendered on {url} but none could be extracted")


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(
        "slot_fetch_retry",
        attempt=state.attempt_number,
        error=str(error),
        type=type(error).__name__,
    )


class RefreshOrchestrator:
    """Fetches every window slot and persists the results."""

    def __init__(
        self,
        store: CacheStore,
        pool: FetcherPool,
        config: MonitorConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.pool = pool
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def reference_day(self) -> date:
        return reference_day(self.clock(), self.config.timezone, self.config.cutover_hour)

    def target_window(self) -> tuple[date, list[date]]:
        """Return the reference day and the school days the cache should hold."""
        today = self.reference_day()
        return today, next_school_days(today, self.config.window_size)

    async def _fetch_once(self, fetcher: PageFetcher, url: str) -> FetchResult:
        """One attempt, bounded so a hung renderer cannot stall the shared run."""
        timeout = self.config.attempt_timeout_seconds
        try:
            result = await asyncio.wait_for(fetcher.fetch(url), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise Unreachable(f"No result from {url} within {timeout}s") from e
        return validate_result(result, url)

    async def _fetch_slot(
        self, slot: int, fetcher: PageFetcher, url: str
    ) -> FetchResult:
        """Fetch one slot, retrying transient failures with a fixed delay."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=_log_retry,
            reraise=True,
        )
        with structlog.contextvars.bound_contextvars(slot=slot):
            return await retrying(self._fetch_once, fetcher, url)

    async def run(self) -> RefreshReport:
        """Run one full refresh: fetch all slots, then persist and evict.

        Slot failures are recorded in the report and never abort the run.

        Raises:
            TransientFetchError: No fetcher sessions could be opened.
        """
        started_at = self.clock()
        today, window = self.target_window()
        urls = self.config.slot_urls()

        with structlog.contextvars.bound_contextvars(refresh_id=uuid.uuid4().hex[:8]):
            logger.info(
                "refresh_run_started",
                reference_day=today.isoformat(),
                window=[day.isoformat() for day in window],
            )

            async with self.pool.sessions(len(urls)) as fetchers:
                results = await asyncio.gather(
                    *(
                        self._fetch_slot(slot, fetcher, url)
                        for slot, (fetcher, url) in enumerate(zip(fetchers, urls))
                    ),
                    return_exceptions=True,
                )

            # All slots have settled; nothing below runs concurrently with a fetch
            slots = self._persist(urls, results)
            retained = self.store.retained_dates(today, self.config.window_size)
            try:
                evicted = self.store.evict_outside_window(retained)
            except StorageError as e:
                # Stored slots stay valid; eviction is retried by the next run
                logger.error("cache_eviction_failed", error=str(e))
                evicted = []

            report = RefreshReport(
                reference_day=today,
                window=window,
                slots=slots,
                evicted=evicted,
                started_at=started_at,
                finished_at=self.clock(),
            )
            logger.info(
                "refresh_run_finished",
                stored=[day.isoformat() for day in report.stored_dates],
                failed=sum(1 for s in slots if s.status is SlotStatus.FAILED),
                unkeyed=sum(1 for s in slots if s.status is SlotStatus.UNKEYED),
            )
            return report

    def _persist(
        self, urls: list[str], results: list[FetchResult | BaseException]
    ) -> list[SlotOutcome]:
        outcomes: list[SlotOutcome] = []
        written: dict[date, int] = {}

        for slot, (url, result) in enumerate(zip(urls, results)):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "slot_fetch_failed",
                    slot=slot,
                    url=url,
                    error=str(result),
                    type=type(result).__name__,
                )
                outcomes.append(
                    SlotOutcome(slot=slot, url=url, status=SlotStatus.FAILED, error=str(result))
                )
                continue

            keyed = key_result(result)
            if isinstance(keyed, Unkeyed):
                logger.warning("slot_result_unkeyed", slot=slot, url=url, error=str(keyed.error))
                outcomes.append(
                    SlotOutcome(
                        slot=slot,
                        url=url,
                        status=SlotStatus.UNKEYED,
                        rows=len(result.rows),
                        readiness=result.readiness,
                        error=str(keyed.error),
                    )
                )
                continue

            actual_date = keyed.actual_date
            if actual_date in written:
                # Slots persist in order; the later slot overwrites
                logger.warning(
                    "actual_date_collision",
                    actual_date=actual_date.isoformat(),
                    slot=slot,
                    previous_slot=written[actual_date],
                )

            record = ScrapedRecord.from_rows(
                result.rows, result.date_label, scraped_at=self.clock()
            )
            try:
                self.store.put(actual_date, record)
            except StorageError as e:
                logger.error("slot_store_failed", slot=slot, error=str(e))
                outcomes.append(
                    SlotOutcome(
                        slot=slot,
                        url=url,
                        status=SlotStatus.FAILED,
                        actual_date=actual_date,
                        error=str(e),
                    )
                )
                continue

            written[actual_date] = slot
            outcomes.append(
                SlotOutcome(
                    slot=slot,
                    url=url,
                    status=SlotStatus.STORED,
                    actual_date=actual_date,
                    rows=len(record.rows),
                    readiness=result.readiness,
                )
            )
        return outcomes


class RefreshCoordinator:
    """Single-flight guard around RefreshOrchestrator.run()."""

    def __init__(self, orchestrator: RefreshOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._inflight: asyncio.Task[RefreshReport] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def trigger(self) -> RefreshReport:
        """Start a refresh, or wait for the one already running.

        Every caller of the same run gets the same report or the same error.
        Cancelling a caller does not cancel the shared run.
        """
        task = self._inflight
        if task is None or task.done():
            task = asyncio.create_task(self.orchestrator.run(), name="substitution-refresh")
            task.add_done_callback(self._on_done)
            self._inflight = task
        else:
            logger.info("refresh_attached")
        return await asyncio.shield(task)

    def _on_done(self, task: asyncio.Task[RefreshReport]) -> None:
        if self._inflight is task:
            self._inflight = None
        if task.cancelled():
            logger.warning("refresh_cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error("refresh_failed", error=str(error), type=type(error).__name__)

    async def backup(self) -> list[date]:
        """Run a full refresh, then copy every retained day into the backup tier.

        Returns:
            Dates that were backed up.
        """
        report = await self.trigger()
        store = self.orchestrator.store
        backed_up: list[date] = []
        for day in store.retained_dates(report.reference_day, self.orchestrator.config.window_size):
            try:
                if store.promote_to_backup(day):
                    backed_up.append(day)
            except StorageError as e:
                logger.error("backup_failed", actual_date=day.isoformat(), error=str(e))
        logger.info("backup_finished", dates=[day.isoformat() for day in backed_up])
        return backed_up
