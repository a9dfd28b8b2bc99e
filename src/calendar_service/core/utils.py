# Utility functions for the calendar service
# ID generation, datetime handling, context references

import base64
import uuid
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

from .errors import ValidationError


CONTEXT_TYPES = ("PERSONAL", "BUSINESS", "HOUSEHOLD")


# ============================================================================
# ID GENERATION
# ============================================================================


def generate_id() -> str:
    """
    Generate a compact, URL-safe identifier.

    UUID v4 encoded as lowercase base32hex (26 characters).
    """
    raw = uuid.uuid4().bytes
    return base64.b32hexencode(raw).decode("ascii").lower().rstrip("=")


def generate_ical_uid(event_id: str, domain: str) -> str:
    """iCalendar UID for an event: {event_id}@{domain}."""
    return f"{event_id}@{domain}"


# ============================================================================
# DATETIME HANDLING
# ============================================================================
#
# Instants are stored as naive UTC datetimes; everything above the storage
# layer works with aware UTC datetimes.


def as_utc(dt: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage(dt: datetime) -> datetime:
    """Normalize to the naive UTC form used by the database columns."""
    return as_utc(dt).replace(tzinfo=None)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_rfc3339(value: str) -> datetime:
    """
    Parse an RFC3339 / ISO8601 datetime string into an aware UTC datetime.

    Supports:
    - Full datetime: 2024-01-15T10:30:00Z
    - With offset: 2024-01-15T10:30:00-05:00
    - With milliseconds: 2024-01-15T10:30:00.123Z (JavaScript toISOString)
    - Date only: 2024-01-15 (midnight UTC)
    """
    return as_utc(date_parser.isoparse(value))


def parse_datetime_field(value: Optional[str], field: str) -> datetime:
    """Parse a required datetime parameter, raising ValidationError on failure."""
    if value is None or value == "":
        raise ValidationError(f"{field} is required", field=field)
    try:
        return parse_rfc3339(value)
    except (ValueError, OverflowError):
        raise ValidationError(
            f"Invalid date for {field}: {value!r}. Use ISO8601 format", field=field
        )


def format_rfc3339(dt: Optional[datetime]) -> Optional[str]:
    """Format an instant as UTC RFC3339 with a Z suffix (second precision)."""
    if dt is None:
        return None
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def start_of_day(value: date) -> datetime:
    """Midnight UTC of a calendar date; the stored form of all-day boundaries."""
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Look up an IANA timezone, defaulting to UTC."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}", field="timezone")


def validate_window(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationError("end must be after start", field="end")


# ============================================================================
# CONTEXT REFERENCES
# ============================================================================


def normalize_context_type(value: Optional[str]) -> str:
    if not value:
        raise ValidationError("contextType is required", field="contextType")
    normalized = value.strip().upper()
    if normalized not in CONTEXT_TYPES:
        raise ValidationError(
            f"Invalid contextType: {value}. Expected one of {', '.join(CONTEXT_TYPES)}",
            field="contextType",
        )
    return normalized


def parse_context_ref(value: str) -> tuple[str, str]:
    """
    Parse a `TYPE:id` context reference as sent by clients in `contexts[]`.

    >>> parse_context_ref("business:abc")
    ('BUSINESS', 'abc')
    """
    context_type, sep, context_id = value.partition(":")
    if not sep or not context_id:
        raise ValidationError(
            f"Invalid context reference: {value!r}. Expected TYPE:id",
            field="contexts",
        )
    return normalize_context_type(context_type), context_id


def intersects(
    start: datetime, end: datetime, window_start: datetime, window_end: datetime
) -> bool:
    """
    Half-open interval intersection of [start, end) with [window_start, window_end).

    Zero-length spans are treated as points inside the window.
    """
    if start >= window_end:
        return False
    if end > window_start:
        return True
    return start == end and start >= window_start
