"""
core/clock.py -- Injectable wall-clock source for expiry logic.

Every store that compares timestamps (sessions, lockouts, CSRF tokens) takes a
Clock at construction instead of calling datetime.now() inline. Production
code uses SystemClock; tests use ManualClock and advance() past a timeout
instead of sleeping.

All timestamps are timezone-aware UTC datetimes.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Real UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """A clock that only moves when told to.

    Usage:
        clock = ManualClock()
        store = SessionStore(clock=clock, ...)
        clock.advance(minutes=31)
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        """Move the clock forward by timedelta(**delta) and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when
