"""
tests/test_events.py -- Unit tests for the security event emitter.

Covers:
  - emit() fans out to every sink with a timestamp from the injected clock
  - A raising sink is logged and skipped; later sinks still receive the event
  - Events are logged on the certguard.security logger
  - RecentEventsSink bound and type filter
"""

from __future__ import annotations

import logging

from auth.events import RecentEventsSink, SecurityEventEmitter, SecurityEventType


def test_emit_reaches_every_sink(clock):
    first, second = RecentEventsSink(), RecentEventsSink()
    emitter = SecurityEventEmitter(sinks=[first, second], clock=clock)
    event = emitter.emit(
        SecurityEventType.FAILED_LOGIN,
        {"email": "alice@example.com", "attempts": 1},
        ip="10.0.0.1",
    )
    assert first.events() == [event]
    assert second.events() == [event]
    assert event.timestamp == clock.now().isoformat()
    assert event.email == "alice@example.com"
    assert event.user_agent == "unknown"


def test_raising_sink_does_not_propagate(clock, caplog):
    after = RecentEventsSink()

    def broken(event):
        raise RuntimeError("audit table unavailable")

    emitter = SecurityEventEmitter(sinks=[broken, after], clock=clock)
    with caplog.at_level(logging.ERROR, logger="certguard.security"):
        emitter.emit(SecurityEventType.CSRF_VIOLATION, {"reason": "missing"})
    assert len(after.events()) == 1
    assert "sink" in caplog.text


def test_events_are_logged_as_warnings(clock, caplog):
    emitter = SecurityEventEmitter(clock=clock)
    with caplog.at_level(logging.WARNING, logger="certguard.security"):
        emitter.emit(SecurityEventType.ACCOUNT_LOCKED, {"email": "alice@example.com"})
    record = next(r for r in caplog.records if r.name == "certguard.security")
    assert record.levelno == logging.WARNING
    assert record.security_event["type"] == "ACCOUNT_LOCKED"


def test_to_dict_serializes_type_value(clock):
    event = SecurityEventEmitter(clock=clock).emit(SecurityEventType.USER_BANNED, principal_id=3)
    data = event.to_dict()
    assert data["type"] == "USER_BANNED"
    assert data["principal_id"] == 3
    assert data["details"] == {}


def test_recent_events_sink_is_bounded_and_filterable(clock):
    sink = RecentEventsSink(maxlen=3)
    emitter = SecurityEventEmitter(sinks=[sink], clock=clock)
    for _ in range(4):
        emitter.emit(SecurityEventType.FAILED_LOGIN)
    emitter.emit(SecurityEventType.SUCCESSFUL_LOGIN)
    assert len(sink.events()) == 3
    assert len(sink.events(SecurityEventType.SUCCESSFUL_LOGIN)) == 1
    sink.clear()
    assert sink.events() == []
