from datetime import datetime, timezone
from typing import Optional, overload


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@overload
def to_utc(dt: None) -> None: ...


@overload
def to_utc(dt: datetime) -> datetime: ...


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime has UTC tzinfo. Handles None gracefully.

    SQLite hands back naive datetimes for ``DateTime(timezone=True)`` columns,
    so anything read from the database goes through here before comparison.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime for JSON columns (audit changes, API payloads)."""
    if dt is None:
        return None
    return to_utc(dt).isoformat()
