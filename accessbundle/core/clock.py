from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Keep every engine timestamp timezone-aware in UTC.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # Some drivers (sqlite) hand back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
