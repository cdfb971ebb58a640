"""
auth/events.py -- Structured security events for the audit collaborator.

SecurityEventEmitter.emit() builds a SecurityEvent, logs it on the
"certguard.security" logger at WARNING, then hands it to every registered
sink (an audit table writer, a SIEM forwarder, the in-memory RecentEventsSink
used by tests and /auth/security-stats).

Emission is fire-and-forget: a sink that raises is logged and skipped. The
request that triggered the event is never failed or delayed by auditing.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from core.clock import Clock, SystemClock

logger = logging.getLogger("certguard.security")


class SecurityEventType(str, Enum):
    FAILED_LOGIN = "FAILED_LOGIN"
    SUCCESSFUL_LOGIN = "SUCCESSFUL_LOGIN"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INVALID_TOKEN = "INVALID_TOKEN"
    CSRF_VIOLATION = "CSRF_VIOLATION"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    USER_BANNED = "USER_BANNED"
    USER_UNBANNED = "USER_UNBANNED"
    USER_ROLE_UPDATED = "USER_ROLE_UPDATED"


@dataclass
class SecurityEvent:
    type: SecurityEventType
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)
    ip: str = "unknown"
    user_agent: str = "unknown"
    principal_id: int | None = None
    email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


EventSink = Callable[[SecurityEvent], None]


class RecentEventsSink:
    """Keeps the last `maxlen` events in memory."""

    def __init__(self, maxlen: int = 500) -> None:
        self._events: deque[SecurityEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self, event_type: SecurityEventType | None = None) -> list[SecurityEvent]:
        with self._lock:
            items = list(self._events)
        if event_type is None:
            return items
        return [e for e in items if e.type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class SecurityEventEmitter:
    """Fan-out point for security events."""

    def __init__(self, sinks: list[EventSink] | None = None, clock: Clock | None = None) -> None:
        self._sinks: list[EventSink] = list(sinks or [])
        self._clock = clock or SystemClock()

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(
        self,
        event_type: SecurityEventType,
        details: dict[str, Any] | None = None,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
        principal_id: int | None = None,
        email: str | None = None,
    ) -> SecurityEvent:
        details = dict(details or {})
        event = SecurityEvent(
            type=event_type,
            timestamp=_iso(self._clock.now()),
            details=details,
            ip=ip or "unknown",
            user_agent=user_agent or "unknown",
            principal_id=principal_id,
            email=email or details.get("email"),
        )
        logger.warning("[SECURITY] %s", event_type.value, extra={"security_event": event.to_dict()})
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:
                # Auditing must never fail the request that triggered it.
                logger.exception("Security event sink %r failed for %s", sink, event_type.value)
        return event


def _iso(value: datetime) -> str:
    return value.isoformat()
