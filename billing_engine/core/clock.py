"""Time sources.

Lifecycle decisions take ``now`` as an argument; services get it from a
Clock so tests can pin or advance time.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Manually controlled clock for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start or datetime(2025, 1, 1, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        self._now = self._now + (delta or timedelta(**kwargs))
        return self._now
