"""School-day arithmetic for the substitution window.

All functions are pure. Only reference_day() and seconds_until() look at a
point in time, and they take it as an argument.
"""

import re
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

# "Freitag, 19.12.2025" / "Mo, 5.1.2026"
DATE_LABEL_PATTERN = re.compile(
    r"(?:[^\W\d_]+\.?,\s*)?(?<!\d)(\d{1,2})\.(\d{1,2})\.(\d{4})(?!\d)"
)


def is_weekend(day: date) -> bool:
    """Return True for Saturday and Sunday."""
    return day.weekday() >= 5


def next_school_day(day: date) -> date:
    """Return the first non-weekend date strictly after ``day``."""
    candidate = day + timedelta(days=1)
    while is_weekend(candidate):
        candidate += timedelta(days=1)
    return candidate


def _to_local(now: datetime, tz_name: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def reference_day(now: datetime, tz_name: str, cutover_hour: int) -> date:
    """Return the date treated as "today" for scheduling.

    ``now`` is converted to the civil time of ``tz_name`` (naive values are
    taken as UTC). From ``cutover_hour`` on, the next calendar day is used.
    A weekend candidate moves forward to the next school day.

    Args:
        now: Current point in time.
        tz_name: IANA timezone name, e.g. "Europe/Berlin".
        cutover_hour: Local hour (0-24) at which the day switches over.

    Returns:
        The reference school day.
    """
    local = _to_local(now, tz_name)
    candidate = local.date()
    if local.hour >= cutover_hour:
        candidate += timedelta(days=1)
    if is_weekend(candidate):
        candidate = next_school_day(candidate)
    return candidate


def next_school_days(start: date, count: int) -> list[date]:
    """Return ``count`` consecutive school days beginning at ``start``.

    A weekend ``start`` is first moved to the following school day; the
    start itself is the first element.
    """
    if count <= 0:
        return []
    current = next_school_day(start) if is_weekend(start) else start
    days = [current]
    while len(days) < count:
        current = next_school_day(current)
        days.append(current)
    return days


def parse_date_label(label: str | None) -> date | None:
    """Extract the actual date from a monitor label like "Freitag, 19.12.2025".

    The label is read strictly as DD.MM.YYYY. Returns None when no such
    pattern exists or it names an impossible date.
    """
    if not label:
        return None
    match = DATE_LABEL_PATTERN.search(label)
    if match is None:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def seconds_until(now: datetime, hour: int, tz_name: str) -> float:
    """Seconds from ``now`` until the next local ``hour``:00 in ``tz_name``.

    Returns a full day when ``now`` is exactly on the hour.
    """
    local = _to_local(now, tz_name)
    target = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= local:
        target += timedelta(days=1)
    # Compare in UTC so DST transitions are measured correctly
    delta = target.astimezone(timezone.utc) - local.astimezone(timezone.utc)
    return delta.total_seconds()
