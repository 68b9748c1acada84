"""Monitor configuration loaded from environment variables.

Every option is read from a ``MONITOR_``-prefixed environment variable
(``MONITOR_CUTOVER_HOUR=16``) or from a .env file in the working directory.
"""

from urllib.parse import quote

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

DEFAULT_MONITOR_URL = (
    "https://bbs-friesoythe.webuntis.com/WebUntis/monitor"
    "?school=bbs-friesoythe&monitorType=subst&format={format}"
)

# One published monitor view per window slot, in day-offset order
DEFAULT_SLOT_FORMATS = [
    "Vertretung heute",
    "Vertretung morgen",
    "Vertretung übermorgen",
    "Vertretung in 3 Tagen",
]


class MonitorConfig(BaseSettings):
    """Substitution monitor configuration.

    Settings are loaded from environment variables with sensible defaults.
    For local development, create a .env file in the project root.
    """

    # Calendar policy
    timezone: str = Field(
        default="Europe/Berlin",
        description="IANA timezone used for the reference day and the backup hour",
    )
    cutover_hour: int = Field(
        default=17,
        ge=0,
        le=24,
        description="Local hour from which the reference day moves to the next school day",
    )
    window_size: int = Field(
        default=4,
        ge=1,
        description="Number of school days kept in the cache (one source view each)",
    )

    # Scheduling
    refresh_interval_seconds: float = Field(
        default=600,
        gt=0,
        description="Seconds between periodic refreshes",
    )
    backup_hour: int = Field(
        default=3,
        ge=0,
        le=23,
        description="Local hour of the daily backup pass",
    )

    # Retry policy per slot fetch
    retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per slot before the slot is skipped for the cycle",
    )
    retry_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Fixed wait between attempts",
    )
    attempt_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound on one attempt: navigation, readiness and extraction",
    )

    # Source
    monitor_url: str = Field(
        default=DEFAULT_MONITOR_URL,
        description="WebUntis monitor URL template with a {format} placeholder",
    )
    slot_formats: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SLOT_FORMATS),
        description="Monitor format names for today, +1, +2, +3 school days",
    )

    # Browser
    headless: bool = Field(default=True, description="Run Chromium headless")
    read_only: bool = Field(
        default=True,
        description="Block mutating requests other than the monitor's data endpoints",
    )
    navigation_timeout_ms: int = Field(
        default=60000,
        description="Page load timeout per attempt",
    )
    readiness_timeout_ms: int = Field(
        default=20000,
        description="How long to wait for rows or a 'no data' signal",
    )
    readiness_poll_ms: int = Field(
        default=500,
        description="Interval between readiness checks",
    )

    # Paths
    cache_dir: str = Field(
        default="data/cache",
        description="Directory holding cache records and the index",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "MONITOR_",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def _window_fits_slots(self) -> "MonitorConfig":
        if self.window_size > len(self.slot_formats):
            raise ValueError(
                f"window_size={self.window_size} exceeds the "
                f"{len(self.slot_formats)} configured slot formats"
            )
        return self

    def slot_urls(self) -> list[str]:
        """Return the fixed source URL of each window slot, in slot order."""
        return [
            self.monitor_url.format(format=quote(name))
            for name in self.slot_formats[: self.window_size]
        ]


# Singleton pattern
_config: MonitorConfig | None = None


def get_config() -> MonitorConfig:
    """Get the monitor configuration singleton.

    Returns:
        MonitorConfig: Monitor configuration instance
    """
    global _config
    if _config is None:
        _config = MonitorConfig()
    return _config
