"""Membership year arithmetic.

A subscription covers one calendar year in UTC. The join/renewal date decides the
subscription year; coverage ends on the last millisecond of that year and the record
rolls over at midnight on January 1st of the next year.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional

MILLIS_PER_SECOND = 1000


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a join/resignation date into an aware UTC datetime.

    Accepts:
    - datetime (naive values are taken as UTC)
    - date (midnight UTC)
    - int/float epoch milliseconds
    - ISO 8601 strings, with or without time and offset ("2024-03-10",
      "2024-03-10T09:30:00Z", "2024-03-10T09:30:00.000+01:00")

    Args:
        value: Raw date value from an event or request body

    Returns:
        Aware UTC datetime, or None if the value is missing or unparseable

    Examples:
        >>> parse_date("2024-03-10")
        datetime.datetime(2024, 3, 10, 0, 0, tzinfo=datetime.timezone.utc)

        >>> parse_date("not a date") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / MILLIS_PER_SECOND, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None

    return None


def subscription_year_for(joined: datetime) -> int:
    """Subscription year is the UTC calendar year of the join date."""
    return ensure_utc(joined).year


def end_of_year(joined: datetime) -> datetime:
    """Last millisecond of the join date's UTC year.

    Examples:
        >>> end_of_year(datetime(2024, 3, 10, tzinfo=timezone.utc))
        datetime.datetime(2024, 12, 31, 23, 59, 59, 999000, tzinfo=datetime.timezone.utc)
    """
    year = subscription_year_for(joined)
    return datetime(year, 12, 31, 23, 59, 59, 999000, tzinfo=timezone.utc)


def start_of_next_year(joined: datetime) -> datetime:
    """Midnight UTC on January 1st after the join date's year."""
    year = subscription_year_for(joined)
    return datetime(year + 1, 1, 1, tzinfo=timezone.utc)


def to_iso_millis(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as ISO 8601 UTC with millisecond precision and a Z suffix.

    Examples:
        >>> to_iso_millis(datetime(2025, 1, 1, tzinfo=timezone.utc))
        '2025-01-01T00:00:00.000Z'
    """
    if value is None:
        return None
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
