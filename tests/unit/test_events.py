"""Tests for batchflow.events."""

from __future__ import annotations

import logging

from batchflow.events import Event, EventKind, emit_event


class TestEventConstructors:
    def test_unit_transition(self):
        event = Event.unit_transition("100_2", "PENDING", "RUNNING")
        assert event.kind == EventKind.UNIT_TRANSITION
        assert event.unit_id == "100_2"
        assert event.payload == {"old": "PENDING", "new": "RUNNING"}

    def test_progress(self):
        event = Event.progress(completed=1, failed=2, total=5, running=1, pending=1, cycle=3)
        assert event.unit_id is None
        assert event.payload["total"] == 5
        assert event.payload["cycle"] == 3

    def test_unit_failed_extra(self):
        event = Event.unit_failed("7", "TIMEOUT", task="s1")
        assert event.payload["state"] == "TIMEOUT"
        assert event.payload["task"] == "s1"


class TestEmitEvent:
    def test_none_callback(self):
        emit_event(None, Event.log(None, "hello"))

    def test_delivers(self):
        received = []
        event = Event.unit_submitted("101", task="s1")
        emit_event(received.append, event)
        assert received == [event]

    def test_callback_errors_are_logged_not_raised(self, caplog):
        def broken(event):
            raise ValueError("boom")

        with caplog.at_level(logging.WARNING, logger="batchflow.events"):
            emit_event(broken, Event.unit_finished("101"))
        assert "boom" in caplog.text
