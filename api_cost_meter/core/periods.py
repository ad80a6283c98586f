"""
Calendar helpers for billing periods.

Every function takes the reference instant explicitly; nothing here reads
the system clock.
"""

from datetime import datetime


def month_start(now: datetime) -> datetime:
    """First instant of the calendar month containing now."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def current_period(now: datetime) -> str:
    """Budget period key ("YYYY-MM") for now."""
    return f"{now.year:04d}-{now.month:02d}"


def validate_period(period: str) -> str:
    """Check that period is a "YYYY-MM" string.

    Raises:
        ValueError: If the period is malformed
    """
    try:
        datetime.strptime(period, "%Y-%m")
    except (TypeError, ValueError):
        raise ValueError(f"period must be formatted YYYY-MM, got {period!r}")
    if len(period) != 7:
        raise ValueError(f"period must be formatted YYYY-MM, got {period!r}")
    return period
