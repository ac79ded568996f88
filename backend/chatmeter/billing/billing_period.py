"""Billing period utilities for calendar-month usage buckets."""
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta

MONTH_FORMAT = "%Y-%m"


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: int | float | None) -> datetime | None:
    """Convert a provider epoch timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def get_current_month(now: datetime | None = None) -> str:
    """Get the usage bucket for a moment as YYYY-MM (UTC).

    Args:
        now: The moment to bucket, or None for the current time.

    Returns:
        The calendar month as YYYY-MM.
    """
    moment = as_utc(now) if now is not None else utc_now()
    return moment.strftime(MONTH_FORMAT)


def get_next_month(month: str) -> str:
    """Get the bucket following ``month``.

    Args:
        month: A bucket as YYYY-MM.

    Returns:
        The next calendar month as YYYY-MM.
    """
    dt = datetime.strptime(month, MONTH_FORMAT)
    return (dt + relativedelta(months=1)).strftime(MONTH_FORMAT)


def get_month_reset_at(month: str) -> datetime:
    """Moment at which ``month``'s quota resets (first instant of next month, UTC)."""
    return datetime.strptime(get_next_month(month), MONTH_FORMAT).replace(tzinfo=timezone.utc)
