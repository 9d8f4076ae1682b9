"""Datetime helpers."""

from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    SQLite returns naive datetimes for timezone-aware columns; those are
    treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an RFC3339/ISO-8601 timestamp into aware UTC.

    Returns None for empty or unparseable input.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ensure_utc(date_parser.isoparse(value.strip()))
    except (ValueError, OverflowError):
        return None
