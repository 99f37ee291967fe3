"""
Time helpers.

Every day bucket in FunnelWatch is a UTC calendar day. Upstream timestamps may
arrive naive or with an offset; normalize them here so a sync run produces the
same day keys regardless of the server's local timezone.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Coerce a datetime to timezone-aware UTC (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_day(dt: datetime) -> date:
    """Truncate a timestamp to its UTC calendar day."""
    return ensure_utc(dt).date()


def day_bounds_utc(day_key: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day_key, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)
