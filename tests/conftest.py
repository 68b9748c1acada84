"""Shared fixtures: a scripted browser-free fetcher pool and a fixed clock."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator
from zoneinfo import ZoneInfo

import pytest

from src.substitutions.config import MonitorConfig
from src.substitutions.models import FetchResult, Readiness, SubstitutionEntry

BERLIN = ZoneInfo("Europe/Berlin")

# Friday 2025-12-19, 10:00 local: window is Fri 19, Mon 22, Tue 23, Wed 24
FRIDAY_MORNING = datetime(2025, 12, 19, 10, 0, tzinfo=BERLIN)


def entry(course: str = "10A", **fields: str) -> SubstitutionEntry:
    values = {
        "period": "3",
        "room": "R12",
        "teacher": "Schmidt",
        "type": "Vertretung",
        "note": "",
    }
    values.update(fields)
    return SubstitutionEntry(course=course, **values)


def result(
    label: str | None,
    rows: list[SubstitutionEntry] | None = None,
    readiness: Readiness | None = None,
) -> FetchResult:
    rows = rows or []
    if readiness is None:
        readiness = Readiness.ROWS if rows else Readiness.EMPTY_INDICATOR
    return FetchResult(rows=rows, date_label=label, readiness=readiness)


class ScriptedFetcher:
    """PageFetcher whose responses are scripted per URL.

    Each URL maps to a list of FetchResult or Exception; the last element
    repeats once the list is exhausted.
    """

    def __init__(self, script: dict[str, list]) -> None:
        self.script = script
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        responses = self.script[url]
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    """FetcherPool handing out the same scripted fetcher for every slot."""

    def __init__(self, fetcher: ScriptedFetcher, error: Exception | None = None) -> None:
        self.fetcher = fetcher
        self.error = error
        self.sessions_opened = 0

    @asynccontextmanager
    async def sessions(self, count: int) -> AsyncIterator[list[ScriptedFetcher]]:
        self.sessions_opened += 1
        if self.error is not None:
            raise self.error
        yield [self.fetcher] * count


@pytest.fixture
def config(tmp_path) -> MonitorConfig:
    return MonitorConfig(
        _env_file=None,
        cache_dir=str(tmp_path / "cache"),
        retry_delay_seconds=0,
        monitor_url="https://monitor.test/monitor?format={format}",
        slot_formats=["day0", "day1", "day2", "day3"],
    )


@pytest.fixture
def urls(config) -> list[str]:
    return config.slot_urls()


@pytest.fixture
def clock():
    return lambda: FRIDAY_MORNING


@pytest.fixture
def full_script(urls) -> dict[str, list]:
    """Every slot answers with its own day; only today has a substitution."""
    return {
        urls[0]: [result("Freitag, 19.12.2025", [entry()])],
        urls[1]: [result("Montag, 22.12.2025")],
        urls[2]: [result("Dienstag, 23.12.2025")],
        urls[3]: [result("Mittwoch, 24.12.2025")],
    }
