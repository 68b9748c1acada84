import asyncio
from datetime import date

import pytest

from src.substitutions.errors import Redirected, StorageError, Unreachable
from src.substitutions.models import Readiness, ScrapedRecord, SlotStatus
from src.substitutions.orchestrator import (
    Keyed,
    RefreshCoordinator,
    RefreshOrchestrator,
    Unkeyed,
    key_result,
)
from src.substitutions.store import CacheStore
from tests.conftest import FakePool, ScriptedFetcher, entry, result

FRIDAY = date(2025, 12, 19)
MONDAY = date(2025, 12, 22)
WINDOW = [FRIDAY, MONDAY, date(2025, 12, 23), date(2025, 12, 24)]


@pytest.fixture
def store(config) -> CacheStore:
    return CacheStore(config.cache_dir)


def make_orchestrator(store, config, clock, script, pool_error=None):
    fetcher = ScriptedFetcher(script)
    pool = FakePool(fetcher, error=pool_error)
    orchestrator = RefreshOrchestrator(store, pool, config, clock=clock)
    return orchestrator, fetcher, pool


def test_key_result_is_tagged():
    keyed = key_result(result("Freitag, 19.12.2025"))
    assert isinstance(keyed, Keyed)
    assert keyed.actual_date == FRIDAY

    unkeyed = key_result(result(None))
    assert isinstance(unkeyed, Unkeyed)
    assert "None" in str(unkeyed.error)


def test_target_window(store, config, clock, full_script):
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)
    assert orchestrator.target_window() == (FRIDAY, WINDOW)


async def test_run_stores_each_slot_under_scraped_date(store, config, clock, full_script, urls):
    orchestrator, fetcher, pool = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert pool.sessions_opened == 1
    assert sorted(fetcher.calls) == sorted(urls)
    assert report.reference_day == FRIDAY
    assert report.window == WINDOW
    assert report.stored_dates == WINDOW
    assert store.indexed_dates() == WINDOW
    assert store.read_record(FRIDAY).courses == ("10A",)
    assert store.read_record(MONDAY).is_empty


async def test_run_keys_by_label_not_by_requested_day(store, config, clock, full_script, urls):
    # The "today" view already shows Monday
    full_script[urls[0]] = [result("Montag, 22.12.2025", [entry("8C")])]
    full_script[urls[1]] = [result("Dienstag, 23.12.2025")]
    full_script[urls[2]] = [result("Mittwoch, 24.12.2025")]
    full_script[urls[3]] = [result("Donnerstag, 25.12.2025")]
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert report.slots[0].actual_date == MONDAY
    assert store.entry(FRIDAY) is None
    assert store.read_record(MONDAY).courses == ("8C",)


async def test_empty_page_with_no_data_signal_is_accepted_without_retry(
    store, config, clock, full_script, urls
):
    full_script[urls[1]] = [result("Montag, 22.12.2025", readiness=Readiness.EMPTY_INDICATOR)]
    orchestrator, fetcher, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert fetcher.calls.count(urls[1]) == 1
    assert report.slots[1].status is SlotStatus.STORED
    assert report.slots[1].readiness is Readiness.EMPTY_INDICATOR
    assert store.read_record(MONDAY).is_empty


async def test_readiness_timeout_is_stored_as_empty(store, config, clock, full_script, urls):
    full_script[urls[2]] = [result("Dienstag, 23.12.2025", readiness=Readiness.TIMEOUT)]
    orchestrator, fetcher, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert fetcher.calls.count(urls[2]) == 1
    assert report.slots[2].status is SlotStatus.STORED
    assert store.entry(date(2025, 12, 23)) is not None


async def test_transient_failure_then_success_is_retried(store, config, clock, full_script, urls):
    full_script[urls[0]] = [
        Unreachable("HTTP 502"),
        result("Freitag, 19.12.2025", [entry()]),
    ]
    orchestrator, fetcher, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert fetcher.calls.count(urls[0]) == 2
    assert report.slots[0].status is SlotStatus.STORED


async def test_rows_without_extractable_content_are_retried(store, config, clock, full_script, urls):
    full_script[urls[0]] = [
        result("Freitag, 19.12.2025", readiness=Readiness.ROWS),
        result("Freitag, 19.12.2025", [entry()]),
    ]
    orchestrator, fetcher, _ = make_orchestrator(store, config, clock, full_script)

    await orchestrator.run()

    assert fetcher.calls.count(urls[0]) == 2
    assert store.read_record(FRIDAY).courses == ("10A",)


async def test_exhausted_retries_skip_slot_and_keep_cached_record(
    store, config, clock, full_script, urls
):
    store.put(MONDAY, ScrapedRecord.from_rows([entry("OLD")], "Montag, 22.12.2025"))
    full_script[urls[1]] = [Redirected("Redirected to /login")]
    orchestrator, fetcher, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert fetcher.calls.count(urls[1]) == 3
    assert report.slots[1].status is SlotStatus.FAILED
    assert "login" in report.slots[1].error
    # Sibling slots still persisted
    assert report.stored_dates == [FRIDAY, date(2025, 12, 23), date(2025, 12, 24)]
    # Previous record untouched and still servable
    assert (await store.get(MONDAY)).courses == ("OLD",)


async def test_non_transient_errors_are_not_retried(store, config, clock, full_script, urls):
    full_script[urls[3]] = [ValueError("bad selector")]
    orchestrator, fetcher, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert fetcher.calls.count(urls[3]) == 1
    assert report.slots[3].status is SlotStatus.FAILED


async def test_unparseable_label_discards_slot(store, config, clock, full_script, urls):
    full_script[urls[2]] = [result("Vertretungsplan", [entry("7A")])]
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert report.slots[2].status is SlotStatus.UNKEYED
    assert report.slots[2].rows == 1
    assert store.entry(date(2025, 12, 23)) is None
    assert not any(
        "7A" in (store.read_record(day) or ScrapedRecord()).courses
        for day in store.indexed_dates()
    )


async def test_same_actual_date_from_two_slots_last_write_wins(
    store, config, clock, full_script, urls
):
    full_script[urls[1]] = [result("Freitag, 19.12.2025", [entry("LATE")])]
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert [s.actual_date for s in report.slots[:2]] == [FRIDAY, FRIDAY]
    assert store.read_record(FRIDAY).courses == ("LATE",)


async def test_run_evicts_days_before_reference_day(store, config, clock, full_script):
    store.put(date(2025, 12, 18), ScrapedRecord.from_rows([entry()], "Donnerstag, 18.12.2025"))
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert report.evicted == [date(2025, 12, 18)]
    assert store.indexed_dates() == WINDOW


async def test_run_fails_when_no_sessions_can_be_opened(store, config, clock, full_script):
    orchestrator, fetcher, _ = make_orchestrator(
        store, config, clock, full_script, pool_error=Unreachable("Browser launch failed")
    )
    with pytest.raises(Unreachable):
        await orchestrator.run()
    assert fetcher.calls == []


async def test_concurrent_triggers_share_one_run(store, config, clock, full_script, urls):
    orchestrator, fetcher, pool = make_orchestrator(store, config, clock, full_script)
    coordinator = RefreshCoordinator(orchestrator)
    fetcher.gate = asyncio.Event()

    first = asyncio.create_task(coordinator.trigger())
    await asyncio.sleep(0)
    second = asyncio.create_task(coordinator.trigger())
    await asyncio.sleep(0)
    assert coordinator.in_flight

    fetcher.gate.set()
    report_a, report_b = await asyncio.gather(first, second)

    assert report_a is report_b
    assert pool.sessions_opened == 1
    assert len(fetcher.calls) == len(urls)
    assert not coordinator.in_flight


async def test_trigger_after_completion_starts_new_run(store, config, clock, full_script):
    orchestrator, _, pool = make_orchestrator(store, config, clock, full_script)
    coordinator = RefreshCoordinator(orchestrator)

    await coordinator.trigger()
    await coordinator.trigger()

    assert pool.sessions_opened == 2


async def test_attached_callers_observe_the_same_error(store, config, clock, full_script):
    orchestrator, _, pool = make_orchestrator(
        store, config, clock, full_script, pool_error=Unreachable("Browser launch failed")
    )
    coordinator = RefreshCoordinator(orchestrator)

    outcomes = await asyncio.gather(
        coordinator.trigger(), coordinator.trigger(), return_exceptions=True
    )

    assert all(isinstance(o, Unreachable) for o in outcomes)
    assert outcomes[0] is outcomes[1]
    assert pool.sessions_opened == 1


async def test_cancelled_caller_does_not_cancel_shared_run(store, config, clock, full_script):
    orchestrator, fetcher, pool = make_orchestrator(store, config, clock, full_script)
    coordinator = RefreshCoordinator(orchestrator)
    fetcher.gate = asyncio.Event()

    impatient = asyncio.create_task(coordinator.trigger())
    await asyncio.sleep(0)
    impatient.cancel()
    await asyncio.gather(impatient, return_exceptions=True)
    assert coordinator.in_flight

    fetcher.gate.set()
    report = await coordinator.trigger()

    assert pool.sessions_opened == 1
    assert report.stored_dates == WINDOW


async def test_backup_promotes_retained_days(store, config, clock, full_script):
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)
    coordinator = RefreshCoordinator(orchestrator)

    backed_up = await coordinator.backup()

    assert backed_up == WINDOW
    for day in WINDOW:
        assert (store.cache_dir / f"data_{day.isoformat()}.json").exists()


class HangingFetcher(ScriptedFetcher):
    """Never answers for one URL, like a renderer stuck in page.evaluate."""

    def __init__(self, script, hang_url: str) -> None:
        super().__init__(script)
        self.hang_url = hang_url

    async def fetch(self, url):
        if url == self.hang_url:
            self.calls.append(url)
            await asyncio.Event().wait()
        return await super().fetch(url)


async def test_hung_attempt_times_out_and_shared_run_completes(
    store, config, clock, full_script, urls
):
    config = config.model_copy(update={"attempt_timeout_seconds": 0.05})
    fetcher = HangingFetcher(full_script, hang_url=urls[1])
    orchestrator = RefreshOrchestrator(store, FakePool(fetcher), config, clock=clock)
    coordinator = RefreshCoordinator(orchestrator)

    report = await asyncio.wait_for(coordinator.trigger(), timeout=5)

    assert fetcher.calls.count(urls[1]) == config.retry_attempts
    assert report.slots[1].status is SlotStatus.FAILED
    assert "within" in report.slots[1].error
    assert report.stored_dates == [FRIDAY, date(2025, 12, 23), date(2025, 12, 24)]
    assert not coordinator.in_flight


async def test_eviction_failure_still_reports_stored_slots(
    store, config, clock, full_script, mocker
):
    store.put(date(2025, 12, 18), ScrapedRecord.from_rows([entry()], "Donnerstag, 18.12.2025"))
    mocker.patch.object(store, "evict_outside_window", side_effect=StorageError("disk full"))
    orchestrator, _, _ = make_orchestrator(store, config, clock, full_script)

    report = await orchestrator.run()

    assert report.stored_dates == WINDOW
    assert report.evicted == []
    assert date(2025, 12, 18) in store.indexed_dates()
