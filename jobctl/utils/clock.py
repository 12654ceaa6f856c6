from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalizes a timestamp read back from the store.

    SQLite hands back naive datetimes even for timezone-aware columns, while
    Postgres returns aware ones. Everything we write is UTC, so a naive value
    is UTC by construction.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
