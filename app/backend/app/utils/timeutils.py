"""
Time helpers.

All persisted timestamps are naive UTC so they compare consistently on
PostgreSQL and SQLite.
"""

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def frozen_clock(instant: datetime) -> Clock:
    """A clock that always reads ``instant``, for replaying a run at a fixed time."""
    return lambda: instant
