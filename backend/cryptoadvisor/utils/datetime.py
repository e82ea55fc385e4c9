"""
Centralized UTC datetime helpers.

All timestamps are persisted as naive UTC datetimes. Aware values are converted
to UTC and stripped of tzinfo on the way in so that comparisons never mix
aware and naive values.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to naive UTC; naive inputs are assumed to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def unix_seconds(value: datetime) -> int:
    """Whole seconds since the epoch for a (naive UTC or aware) datetime."""
    value = to_utc_naive(value)
    return int(value.replace(tzinfo=timezone.utc).timestamp())
