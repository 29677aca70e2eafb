"""UTC date and time utilities."""

import calendar
from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """
    Return current UTC time as timezone-aware datetime.

    This function should be used instead of datetime.now() or datetime.utcnow()
    to ensure all timestamps are timezone-aware and stored in UTC.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Return the current calendar date in UTC."""
    return utc_now().date()


def days_in_month(day: date) -> int:
    """
    Return the number of days in the month containing ``day``.

    Example:
        >>> days_in_month(date(2024, 2, 10))
        29
    """
    return calendar.monthrange(day.year, day.month)[1]
