"""MonitorPage - renders one WebUntis substitution monitor view.

The monitor (/WebUntis/monitor?monitorType=subst&format=...) is a script-rendered
page that shows a single day. Its table is filled by an XHR after the page shell
has loaded, so an empty table right after navigation usually means "not loaded
yet", not "no substitutions".

DOM structure:
  div.title / header  -> "Freitag, 19.12.2025" (the day actually shown)
  table
    tbody tr -> td per column:
      Klasse(n) | Pos | Stunde | Raum | (Lehrer) | Art | Text
  .monitorMessage / .untis-message -> "Keine Vertretungen" on empty days

Readiness detection polls a small DOM snapshot until it sees rows or an
explicit "no data" signal. When the readiness timeout passes without either,
a rendered-but-empty table counts as EMPTY_TABLE and anything else as TIMEOUT.
"""

import asyncio
from typing import Any, Iterable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from src.substitutions.errors import Redirected, TransientFetchError, Unreachable
from src.substitutions.logging import get_logger
from src.substitutions.models import FetchResult, Readiness, SubstitutionEntry
from src.substitutions.school_calendar import DATE_LABEL_PATTERN

log = get_logger(__name__)

EMPTY_SELECTORS: tuple[str, ...] = (
    ".monitor-no-data",
    ".monitorMessage",
    ".untis-message",
    ".alert-warning",
    ".alert-info",
)
# No substring class matches ([class*="empty"]): loading placeholders
# carry such classes before the table data arrives.

EMPTY_TEXT_SNIPPETS: tuple[str, ...] = (
    "keine daten",
    "kein vertretungsplan",
    "keine vertretungen",
    "keine einträge",
    "keine informationen",
    "noch keine informationen",
    "no data",
    "no entries",
)

# Elements that carry the displayed day, most specific first
DATE_LABEL_SELECTORS: tuple[str, ...] = (
    ".title",
    ".monitor-title",
    ".header",
    "h1",
    "h2",
)

# URL fragments of pages we never expect to land on
_UNEXPECTED_URL_PARTS: tuple[str, ...] = ("login", "error")

_MIN_CELLS = 7

_SNAPSHOT_JS = """(emptySelectors) => {
    const rows = document.querySelectorAll('table tbody tr');
    const emptyElement = emptySelectors.some(selector => {
        try {
            return document.querySelector(selector) !== null;
        } catch (e) {
            return false;
        }
    });
    return {
        rowCount: rows.length,
        tableExists: document.querySelector('table') !== null,
        emptyElement: emptyElement,
        bodyText: (document.body && document.body.innerText) || '',
    };
}"""

_ROW_CELLS_JS = """() => Array.from(document.querySelectorAll('table tbody tr')).map(
    row => Array.from(row.querySelectorAll('td')).map(td => (td.innerText || '').trim())
)"""

_LABEL_TEXTS_JS = """(selectors) => {
    const texts = [];
    for (const selector of selectors) {
        for (const el of document.querySelectorAll(selector)) {
            texts.push((el.innerText || '').trim());
        }
    }
    texts.push((document.body && document.body.innerText) || '');
    return texts;
}"""


def classify_snapshot(snapshot: dict[str, Any]) -> Readiness | None:
    """Classify a DOM snapshot while the page may still be loading.

    Returns ROWS or EMPTY_INDICATOR when the page is conclusive, None otherwise.
    """
    if int(snapshot.get("rowCount") or 0) > 0:
        return Readiness.ROWS
    if snapshot.get("emptyElement"):
        return Readiness.EMPTY_INDICATOR
    text = str(snapshot.get("bodyText") or "").lower()
    if any(snippet in text for snippet in EMPTY_TEXT_SNIPPETS):
        return Readiness.EMPTY_INDICATOR
    return None


def classify_after_timeout(snapshot: dict[str, Any]) -> Readiness:
    """Classify the last snapshot once the readiness timeout has passed."""
    readiness = classify_snapshot(snapshot)
    if readiness is not None:
        return readiness
    if snapshot.get("tableExists"):
        return Readiness.EMPTY_TABLE
    return Readiness.TIMEOUT


def rows_from_cells(rows: Iterable[list[str]]) -> list[SubstitutionEntry]:
    """Map monitor table cells to entries, skipping rows with too few cells."""
    entries: list[SubstitutionEntry] = []
    for cells in rows:
        if len(cells) < _MIN_CELLS:
            log.debug("row_skipped", cells=len(cells))
            continue
        entries.append(
            SubstitutionEntry(
                course=cells[0],
                period=cells[2],
                room=cells[3],
                teacher=cells[4],
                type=cells[5],
                note=cells[6],
            )
        )
    return entries


def find_date_label(texts: Iterable[str]) -> str | None:
    """Return the first "<weekday>, DD.MM.YYYY" occurrence among ``texts``."""
    for text in texts:
        match = DATE_LABEL_PATTERN.search(text or "")
        if match:
            return match.group(0).strip()
    return None


class MonitorPage:
    """One substitution monitor view in a Playwright page."""

    def __init__(
        self,
        page: Page,
        *,
        navigation_timeout_ms: int = 60000,
        readiness_timeout_ms: int = 20000,
        poll_ms: int = 500,
    ) -> None:
        self.page = page
        self.navigation_timeout_ms = navigation_timeout_ms
        self.readiness_timeout_ms = readiness_timeout_ms
        self.poll_ms = poll_ms

    async def navigate(self, url: str) -> None:
        """Load the monitor view.

        Raises:
            Unreachable: Network failure, timeout or an HTTP error status.
            Redirected: The browser ended up on a login or error page.
        """
        try:
            response = await self.page.goto(
                url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms
            )
        except PlaywrightTimeoutError as e:
            raise Unreachable(f"Timed out loading {url}") from e
        except PlaywrightError as e:
            raise Unreachable(f"Failed to load {url}: {e}") from e

        if response is not None and not response.ok:
            raise Unreachable(f"HTTP {response.status} on {url}")

        current = self.page.url.lower()
        if any(part in current for part in _UNEXPECTED_URL_PARTS):
            raise Redirected(f"Redirected to {self.page.url}")

        log.debug("monitor_page_navigated", url=url)

    async def _snapshot(self) -> dict[str, Any]:
        try:
            return await self.page.evaluate(_SNAPSHOT_JS, list(EMPTY_SELECTORS))
        except PlaywrightError as e:
            # The page may still be replacing its document
            log.debug("snapshot_failed", error=str(e))
            return {}

    async def wait_for_content(self) -> Readiness:
        """Poll until rows or a "no data" signal appear, or the timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout_ms / 1000
        while True:
            snapshot = await self._snapshot()
            readiness = classify_snapshot(snapshot)
            if readiness is not None:
                return readiness
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.poll_ms / 1000)

        readiness = classify_after_timeout(snapshot)
        log.info("readiness_timeout", url=self.page.url, readiness=readiness.value)
        return readiness

    async def extract_rows(self) -> list[SubstitutionEntry]:
        cells = await self.page.evaluate(_ROW_CELLS_JS)
        return rows_from_cells(cells or [])

    async def extract_date_label(self) -> str | None:
        texts = await self.page.evaluate(_LABEL_TEXTS_JS, list(DATE_LABEL_SELECTORS))
        return find_date_label(texts or [])

    async def scrape(self, url: str) -> FetchResult:
        """Navigate to ``url`` and extract rows plus the displayed date label.

        Raises:
            TransientFetchError: Loading or extraction failed.
        """
        await self.navigate(url)
        readiness = await self.wait_for_content()
        try:
            rows = await self.extract_rows() if readiness is Readiness.ROWS else []
            date_label = await self.extract_date_label()
        except PlaywrightError as e:
            raise TransientFetchError(f"Extraction failed on {url}: {e}") from e

        log.info(
            "monitor_page_scraped",
            url=url,
            readiness=readiness.value,
            rows=len(rows),
            date_label=date_label,
        )
        return FetchResult(rows=rows, date_label=date_label, readiness=readiness)
