"""Clock helpers -- every timestamp the system writes goes through here.

Dates are stored as ISO strings (YYYY-MM-DD), timestamps as ISO datetimes
in UTC, so lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utc_now().date()


def iso_now() -> str:
    return utc_now().isoformat()


def iso_today() -> str:
    return utc_today().isoformat()


def days_from(start: date, days: int) -> str:
    """ISO date `days` after `start` (negative goes backwards)."""
    return (start + timedelta(days=days)).isoformat()


def parse_date(value: str | date | datetime) -> date:
    """Accept an ISO date, ISO datetime or date object."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_datetime(value: str | datetime) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def add_months(start: date, months: int, day_of_month: int | None = None) -> date:
    """Shift `start` by whole months, clamping the day to the month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(day_of_month or start.day, last_day)
    return date(year, month, day)
