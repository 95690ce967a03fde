"""
Time helpers.

All timestamps are stored as naive UTC so comparisons behave identically on
PostgreSQL and SQLite.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
