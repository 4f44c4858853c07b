"""Date and time helpers."""

from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_header_date(value: str) -> Optional[datetime]:
    """
    Parse an RFC 2822 ``Date`` header, falling back to dateutil.

    Returns:
        Aware UTC datetime, or None when the header is unusable
    """
    if not value:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        pass
    try:
        return ensure_utc(date_parser.parse(value))
    except (ValueError, OverflowError):
        return None


def parse_loose_date(value: str) -> Optional[date]:
    """Parse a human-written date such as ``April 20, 2023`` or ``2023-04-20``."""
    if not value or not value.strip():
        return None
    try:
        return date_parser.parse(value.strip(), fuzzy=True).date()
    except (ValueError, OverflowError):
        return None
