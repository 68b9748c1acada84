"""Playwright page setup for monitor rendering."""

from urllib.parse import urlsplit

from playwright.async_api import Page, Route

from src.substitutions.logging import get_logger

log = get_logger(__name__)

# The monitor renders from scripts and XHR alone
BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset(
    {"image", "stylesheet", "font", "media"}
)

_MUTATING_METHODS: frozenset[str] = frozenset({"POST", "PUT", "DELETE", "PATCH"})

# POST endpoints the monitor polls for its table; they change nothing server-side
WHITELISTED_AJAX_PATHS: frozenset[str] = frozenset(
    {
        "/WebUntis/monitor/substitution/data",
        "/WebUntis/monitor/substitution/format",
    }
)

MONITOR_VIEWPORT = {"width": 1920, "height": 1080}


def is_allowed_request(method: str, url: str, *, read_only: bool) -> bool:
    """Whether a request may leave the browser under the read-only policy."""
    if not read_only or method not in _MUTATING_METHODS:
        return True
    return urlsplit(url).path in WHITELISTED_AJAX_PATHS


async def configure_page_for_scraping(
    page: Page, *, read_only: bool = False, timeout_ms: int = 60000
) -> None:
    """Install request filtering, viewport and timeouts on a monitor page.

    Args:
        page: Playwright Page instance.
        read_only: Abort mutating requests other than the monitor's table
            endpoints.
        timeout_ms: Default action and navigation timeout.
    """

    async def _filter(route: Route) -> None:
        request = route.request
        if not is_allowed_request(request.method, request.url, read_only=read_only):
            log.warning("monitor_request_blocked", method=request.method, url=request.url)
            await route.abort("blockedbyclient")
        elif request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    await page.route("**/*", _filter)
    await page.set_viewport_size(MONITOR_VIEWPORT)
    page.set_default_timeout(timeout_ms)
    page.set_default_navigation_timeout(timeout_ms)
