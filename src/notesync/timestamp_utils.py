"""Timestamp utilities for notesync.

Notes carry ISO-8601 timestamps as strings. These helpers parse them into
comparable datetimes and produce new ones.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing "Z" and the space separator used by SQL servers.
    Naive values are taken to be UTC.

    Args:
        value: Timestamp string or None

    Returns:
        Aware datetime, or None if value is empty or unparseable
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def now_timestamp() -> str:
    """Get the current time as an ISO-8601 UTC string."""
    return format_timestamp(datetime.now(timezone.utc))


def record_timestamp(record: Dict[str, Any]) -> Optional[datetime]:
    """Get the authoritative modification time of a record.

    Uses updateTime, falling back to createTime.
    """
    return parse_timestamp(record.get("updateTime")) or parse_timestamp(
        record.get("createTime")
    )


def is_newer(candidate: Optional[datetime], reference: Optional[datetime]) -> bool:
    """Strict "candidate is later than reference" where None is oldest."""
    if candidate is None:
        return False
    if reference is None:
        return True
    return candidate > reference
