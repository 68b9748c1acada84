"""Error hierarchy for substitution monitor retry classification.

Transient fetch failures are retried by the refresh orchestrator's tenacity
policy; everything else is permanent for the current refresh cycle.

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(TransientFetchError), stop=stop_after_attempt(3))
    async def fetch_slot(url: str):
        ...
"""


class MonitorError(Exception):
    """Base exception for all substitution monitor errors."""

    pass


class TransientFetchError(MonitorError):
    """Temporary page fetch failure that may succeed on retry.

    Examples: network timeouts, HTTP 5xx, rows rendered but not yet extractable.
    """

    pass


class Unreachable(TransientFetchError):
    """The monitor page could not be loaded (network, HTTP status, timeout)."""

    pass


class Redirected(TransientFetchError):
    """The browser landed on an unexpected page (login or error page)."""

    pass


class ParseError(MonitorError):
    """The scraped date label could not be parsed into an actual date.

    Not retried: the slot's result is discarded for this cycle.
    """

    pass


class StorageError(MonitorError):
    """Reading or writing a cache record or the cache index failed."""

    pass
