"""Timezone helpers.

Core services take `now` as an argument; only the HTTP and worker edges
call utc_now().
"""
from datetime import date, datetime, time, timezone
from typing import Optional

from coachmeter.core.errors import ValidationError


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite returns them naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def parse_now(raw: Optional[str]) -> datetime:
    """Parse an optional ISO-8601 `now` query value, defaulting to the wall clock."""
    if not raw:
        return utc_now()
    try:
        return ensure_utc(datetime.fromisoformat(raw.replace('Z', '+00:00')))
    except ValueError:
        raise ValidationError("Invalid ISO timestamp format for 'now' parameter")
