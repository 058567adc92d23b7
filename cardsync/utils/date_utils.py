"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, timezone


def subtract_months(from_date: date, months: int) -> date:
    """Same day-of-month `months` earlier, clamped to the end of shorter months"""
    month_index = from_date.year * 12 + (from_date.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(from_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as SQLite returns them) as UTC"""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
