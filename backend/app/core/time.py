"""Timezone-aware UTC helpers.

All persisted timestamps are UTC. Some drivers (SQLite) hand back naive
datetimes, so values read from the database go through ``ensure_utc``.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_key(moment: datetime) -> str:
    """Usage period key (``YYYY-MM``) for the UTC month containing ``moment``."""
    return ensure_utc(moment).strftime("%Y-%m")
