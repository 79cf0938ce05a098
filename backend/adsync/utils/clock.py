"""Time helpers.

All persisted timestamps are naive UTC so they compare cleanly on both
PostgreSQL `timestamp` columns and SQLite.
"""

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def today_in_timezone(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Return the calendar date for an ad account's timezone.

    Ad platforms bucket daily stats in the account timezone, so "today" must
    be computed there. Unknown or missing zones fall back to UTC.
    """
    now_utc = (now or utcnow()).replace(tzinfo=timezone.utc)
    if not tz_name:
        return now_utc.date()
    try:
        return now_utc.astimezone(ZoneInfo(tz_name)).date()
    except (ZoneInfoNotFoundError, ValueError):
        return now_utc.date()
