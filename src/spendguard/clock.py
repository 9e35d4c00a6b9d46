"""Time helpers.

All persisted timestamps are naive UTC so they compare consistently on
SQLite and PostgreSQL.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_day_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[start_of_day, start_of_next_day)`` for the UTC day containing ``now``."""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
