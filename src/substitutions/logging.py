"""structlog setup for the substitution monitor.

Console output for local runs, one JSON object per line when deployed.
Everything is written to stderr: the CLI reserves stdout for the JSON views
it prints. Modules log through get_logger(); refresh runs bind ``refresh_id``
and ``slot`` as contextvars so every line of a run can be correlated.
"""

import logging
import sys

import structlog

# Third-party loggers that are chatty at INFO and below
_QUIET_LOGGERS = ("asyncio", "playwright")


def _add_app_name(_, __, event_dict: dict) -> dict:
    event_dict.setdefault("app", "substitution-monitor")
    return event_dict


def setup_logging(json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog and route stdlib logging to the same stream.

    Args:
        json_output: Render JSON lines instead of the coloured console format.
        log_level: Minimum level name, e.g. ``"DEBUG"``. Unknown names fall
            back to INFO.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        renderers = [
            _add_app_name,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=shared + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
        level=level,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
