"""
Timezone helpers.

All timestamps are handled as timezone-aware UTC datetimes. Some backends
(SQLite) hand back naive values, so anything read from the store passes
through ensure_utc() before it is compared in Python.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
