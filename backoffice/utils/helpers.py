from datetime import datetime, date, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(value: Any) -> datetime | None:
    """Unix seconds (as sent by Stripe) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def isoformat(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime) and value.tzinfo is None:
        # SQLite hands back naive datetimes; everything is stored as UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def safe_int(value: Any, default: int | None = None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
