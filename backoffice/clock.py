# backoffice/clock.py

# Time source injected into the scheduler and every job.
# SystemClock reads the wall clock; ManualClock is advanced explicitly (tests, replays).
# All values are UTC-aware.

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._now = value.astimezone(timezone.utc)

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now
