"""
Timezone utilities for the entitlement core.

All persisted timestamps are UTC. SQLite hands back naive datetimes, so
anything read from the database goes through ``ensure_utc`` before it is
compared with an aware value.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def expiry_from_ttl(ttl: Optional[timedelta], now: Optional[datetime] = None) -> Optional[datetime]:
    """Absolute expiry for a TTL, or None when the TTL is disabled."""
    if ttl is None:
        return None
    return (ensure_utc(now) or utc_now()) + ttl


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Half-open overlap test: [a) and [b) touching at an endpoint do not overlap."""
    return ensure_utc(start_a) < ensure_utc(end_b) and ensure_utc(start_b) < ensure_utc(end_a)
