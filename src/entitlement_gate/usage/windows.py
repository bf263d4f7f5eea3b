"""Usage window boundaries.

The monthly window starts at the first instant of the current calendar
month in UTC and ends at the first instant of the next one. The hourly
window is a sliding 60 minutes ending at "now", not a clock-hour bucket.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

HOURLY_WINDOW = timedelta(hours=1)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def month_start(at: datetime) -> datetime:
    at = ensure_utc(at)
    return at.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(at: datetime) -> datetime:
    start = month_start(at)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def hourly_window_start(now: datetime) -> datetime:
    return ensure_utc(now) - HOURLY_WINDOW


def db_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string, so lexical order matches time order."""
    return ensure_utc(value).isoformat(timespec="microseconds")
