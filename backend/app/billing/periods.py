"""Calendar-aware billing period arithmetic.

Every period end in the system is computed here. Adding whole calendar
months keeps the billing anchor day stable: a subscription started on the
31st renews on the last day of shorter months instead of drifting into the
next month.
"""

import calendar
from datetime import datetime, timezone

from app.billing.plans import PlanInterval


def utcnow() -> datetime:
    """Current time as naive UTC (matches the DB columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _clamped(value: datetime, year: int, month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def add_calendar_months(value: datetime, months: int) -> datetime:
    """Add ``months`` calendar months, clamping to the target month's last day.

    Time-of-day is preserved. ``months`` may be negative.

    >>> add_calendar_months(datetime(2023, 1, 31), 1)
    datetime.datetime(2023, 2, 28, 0, 0)
    """
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    return _clamped(value, year, month + 1)


def add_calendar_years(value: datetime, years: int) -> datetime:
    """Add ``years`` calendar years; Feb 29 lands on Feb 28 in non-leap years."""
    return _clamped(value, value.year + years, value.month)


def compute_next_period_end(start: datetime, interval: PlanInterval | str) -> datetime:
    """Return the end of a period that starts at ``start``."""
    if PlanInterval(interval) is PlanInterval.MONTHLY:
        return add_calendar_months(start, 1)
    return add_calendar_years(start, 1)
