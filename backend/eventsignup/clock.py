from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances.

    SQLite hands back naive values for TIMESTAMP(timezone=True) columns; everything
    this package stores is UTC, so naive values are read as UTC.
    """
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_now(now: Optional[datetime]) -> datetime:
    return normalize_dt(now) if now is not None else now_utc()
