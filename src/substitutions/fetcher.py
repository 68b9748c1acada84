"""Page fetcher boundary and its Playwright implementation.

The refresh orchestrator only knows the PageFetcher / FetcherPool protocols:
"render this URL and give me rows plus the date label". PlaywrightFetcherPool
backs them with one headless Chromium per refresh run and one page per slot,
so slots never share navigation state.
"""

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, async_playwright

from src.substitutions.config import MonitorConfig
from src.substitutions.errors import Unreachable
from src.substitutions.logging import get_logger
from src.substitutions.models import FetchResult
from src.substitutions.pages.monitor import MonitorPage
from src.substitutions.utils import configure_page_for_scraping

logger = get_logger(__name__)


class PageFetcher(Protocol):
    async def fetch(self, url: str) -> FetchResult:
        """Render ``url`` and extract its rows and date label.

        Raises:
            TransientFetchError: Unreachable or Redirected.
        """
        ...


class FetcherPool(Protocol):
    def sessions(self, count: int) -> AsyncContextManager[list[PageFetcher]]:
        """Open ``count`` independent fetcher sessions for one refresh run."""
        ...


class PlaywrightPageFetcher:
    """PageFetcher bound to a single Playwright page."""

    def __init__(self, page: Page, config: MonitorConfig) -> None:
        self.monitor = MonitorPage(
            page,
            navigation_timeout_ms=config.navigation_timeout_ms,
            readiness_timeout_ms=config.readiness_timeout_ms,
            poll_ms=config.readiness_poll_ms,
        )

    async def fetch(self, url: str) -> FetchResult:
        return await self.monitor.scrape(url)


class PlaywrightFetcherPool:
    """Launches Chromium per refresh run and hands out one page per slot."""

    def __init__(self, config: MonitorConfig) -> None:
        self.config = config

    @asynccontextmanager
    async def sessions(self, count: int) -> AsyncIterator[list[PageFetcher]]:
        """Yield ``count`` fetchers; the browser is closed on exit.

        Raises:
            Unreachable: Chromium could not be started.
        """
        async with async_playwright() as pw:
            try:
                browser = await pw.chromium.launch(
                    headless=self.config.headless,
                    args=["--no-sandbox", "--disable-setuid-sandbox"],
                )
            except PlaywrightError as e:
                raise Unreachable(f"Browser launch failed: {e}") from e

            logger.debug("browser_launched", sessions=count)
            try:
                fetchers: list[PageFetcher] = []
                for _ in range(count):
                    context = await browser.new_context()
                    page = await context.new_page()
                    await configure_page_for_scraping(
                        page,
                        read_only=self.config.read_only,
                        timeout_ms=self.config.navigation_timeout_ms,
                    )
                    fetchers.append(PlaywrightPageFetcher(page, self.config))
                yield fetchers
            finally:
                await browser.close()
                logger.debug("browser_closed")
