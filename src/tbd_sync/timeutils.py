"""UTC timestamp helpers.

All stored timestamps use one shape: ISO 8601, UTC, millisecond precision,
``Z`` suffix (``2025-01-07T10:30:00.000Z``).  Any writer that formats
timestamps differently would produce spurious content-hash mismatches.
"""

from __future__ import annotations

from datetime import datetime, timezone


def now() -> str:
    """Return the current UTC time as a canonical timestamp string."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a canonical timestamp.

    Naive datetimes are assumed to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{value.microsecond // 1000:03d}Z"
    )


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse a timestamp string (or pass through a datetime) as aware UTC.

    Raises:
        ValueError: If the string is not ISO 8601.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: str | datetime) -> str:
    """Round-trip a timestamp through the canonical format."""
    return format_timestamp(parse_timestamp(value))


def filename_timestamp(value: str) -> str:
    """Make a canonical timestamp safe for filenames (colons to hyphens)."""
    return value.replace(":", "-")

