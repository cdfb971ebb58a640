"""
auth/lockout.py -- Failed-login tracking and temporary lockout per identifier.

State machine per identifier:

    UNLOCKED --(attempts >= max_attempts)--> LOCKED --(now >= locked_until)--> UNLOCKED

The LOCKED -> UNLOCKED edge is lazy: nothing fires when locked_until passes.
check_lock() deletes a lapsed record, and record_failure() on a lapsed record
resets attempts to 0 before counting, so a lapsed lock never carries stale
counts forward.

Identifier choice (identifier_for): the email when the request carries one,
otherwise the client IP. An attacker cycling through many emails from one IP
is therefore not throttled here; that case is left to the slowapi login limit
in api/limiter.py. Conversely, a lock on an email applies whether or not the
account exists, so the lock check itself never reveals account existence.

IPActivityTracker (same module, same sweep cadence) counts requests per
client IP and raises a SUSPICIOUS_ACTIVITY event when one IP exceeds
SUSPICIOUS_REQUESTS_PER_WINDOW requests inside one window.

Thread safety: each tracker guards its dict with one lock; every
read-modify-write (record_failure, check_lock, track) and sweep() holds it.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import replace
from datetime import timedelta

from auth.events import SecurityEventEmitter, SecurityEventType
from auth.models import FailureInfo, IPActivityRecord, LockInfo, LockoutRecord
from core.clock import Clock, SystemClock

logger = logging.getLogger("certguard.lockout")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCKOUT_SECONDS = 15 * 60
STALE_RECORD_SECONDS = 24 * 60 * 60

SUSPICIOUS_WINDOW_SECONDS = 60
SUSPICIOUS_REQUESTS_PER_WINDOW = 100


def identifier_for(email: str | None, client_ip: str | None) -> str:
    """Lockout key for a login attempt: the email if supplied, else the client IP."""
    if email:
        return email.strip().lower()
    return client_ip or "unknown"


class LockoutTracker:
    def __init__(
        self,
        clock: Clock | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lockout_seconds: int = DEFAULT_LOCKOUT_SECONDS,
    ) -> None:
        self._clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._records: dict[str, LockoutRecord] = {}
        self._lock = threading.Lock()

    def record_failure(self, identifier: str) -> FailureInfo:
        """Count one failed attempt and lock the identifier on reaching max_attempts."""
        now = self._clock.now()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                record = LockoutRecord(identifier=identifier, attempts=0, first_attempt_at=now, last_attempt_at=now)
                self._records[identifier] = record

            if record.locked and record.locked_until is not None and now >= record.locked_until:
                record.locked = False
                record.locked_until = None
                record.attempts = 0
                record.first_attempt_at = now

            record.attempts += 1
            record.last_attempt_at = now

            freshly_locked = False
            if record.attempts >= self.max_attempts and not record.locked:
                record.locked = True
                record.locked_until = now + timedelta(seconds=self.lockout_seconds)
                freshly_locked = True

            info = FailureInfo(
                attempts=record.attempts,
                locked=record.locked,
                locked_until=record.locked_until,
                remaining_attempts=max(0, self.max_attempts - record.attempts),
            )
        if freshly_locked:
            logger.info("Identifier locked until %s after %d attempts", info.locked_until, info.attempts)
        return info

    def check_lock(self, identifier: str) -> LockInfo | None:
        """Return lock details while the identifier is locked, else None.

        A lapsed lock deletes the record (attempts start over at 1).
        """
        now = self._clock.now()
        with self._lock:
            record = self._records.get(identifier)
            if record is None or not record.locked or record.locked_until is None:
                return None
            if now >= record.locked_until:
                del self._records[identifier]
                return None
            remaining = (record.locked_until - now).total_seconds()
            return LockInfo(
                locked=True,
                locked_until=record.locked_until,
                attempts=record.attempts,
                remaining_minutes=max(1, math.ceil(remaining / 60)),
            )

    def reset(self, identifier: str) -> None:
        """Forget the identifier entirely (successful authentication)."""
        with self._lock:
            self._records.pop(identifier, None)

    def get(self, identifier: str) -> LockoutRecord | None:
        """Snapshot of the raw record, without lazy expiry. For stats and tests."""
        with self._lock:
            record = self._records.get(identifier)
            return replace(record) if record is not None else None

    def sweep(self) -> int:
        """Remove records idle for 24 hours that are not actively locked."""
        now = self._clock.now()
        cutoff = now - timedelta(seconds=STALE_RECORD_SECONDS)
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if record.last_attempt_at < cutoff
                and (not record.locked or (record.locked_until is not None and now >= record.locked_until))
            ]
            for key in stale:
                del self._records[key]
        if stale:
            logger.info("Cleaned up %d stale lockout records", len(stale))
        return len(stale)

    def stats(self) -> dict:
        now = self._clock.now()
        with self._lock:
            locked = [
                r
                for r in self._records.values()
                if r.locked and r.locked_until is not None and now < r.locked_until
            ]
            return {
                "totalLockedAccounts": len(locked),
                "totalFailedAttempts": len(self._records),
                "lockedAccounts": [
                    {
                        "identifier": r.identifier,
                        "attempts": r.attempts,
                        "lockedUntil": r.locked_until.isoformat(),
                    }
                    for r in locked
                ],
            }


class IPActivityTracker:
    """Per-IP request counters for anomaly detection."""

    def __init__(
        self,
        clock: Clock | None = None,
        events: SecurityEventEmitter | None = None,
        threshold: int = SUSPICIOUS_REQUESTS_PER_WINDOW,
        window_seconds: int = SUSPICIOUS_WINDOW_SECONDS,
    ) -> None:
        self._clock = clock or SystemClock()
        self._events = events
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._records: dict[str, IPActivityRecord] = {}
        self._lock = threading.Lock()

    def track(self, ip: str, endpoint: str) -> bool:
        """Count one request. Returns True the first time ip crosses the threshold in a window."""
        now = self._clock.now()
        with self._lock:
            record = self._records.get(ip)
            if record is None:
                record = IPActivityRecord(ip=ip, first_seen=now, last_seen=now, window_start=now)
                self._records[ip] = record
            if (now - record.window_start).total_seconds() >= self.window_seconds:
                record.window_start = now
                record.window_count = 0
                record.flagged = False
            record.last_seen = now
            record.request_count += 1
            record.window_count += 1
            record.endpoints.add(endpoint)
            crossed = record.window_count > self.threshold and not record.flagged
            if crossed:
                record.flagged = True
            count = record.window_count
        if crossed and self._events is not None:
            self._events.emit(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                {
                    "requestCount": count,
                    "timeWindowSeconds": self.window_seconds,
                    "reason": "High request rate from single IP",
                },
                ip=ip,
            )
        return crossed

    def sweep(self) -> int:
        cutoff = self._clock.now() - timedelta(seconds=STALE_RECORD_SECONDS)
        with self._lock:
            stale = [ip for ip, record in self._records.items() if record.last_seen < cutoff]
            for ip in stale:
                del self._records[ip]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
