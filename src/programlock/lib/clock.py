"""Time sources for the lock protocol."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def current(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def current(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock that only moves when told to.

    Usage:
        clock = FixedClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
        lock = DatabaseLock(session, "job", "worker-1", clock=clock, sleep=clock.advance)
    """

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self.instant = instant

    def current(self) -> datetime:
        return self.instant

    def advance(self, seconds: float) -> None:
        self.instant = self.instant + timedelta(seconds=seconds)
