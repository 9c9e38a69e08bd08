"""Tests for progress trackers and the result display."""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from batchflow.events import Event
from batchflow.monitor import AggregateSnapshot, MonitorResult
from batchflow.progress import (
    ProgressTracker,
    RichProgressTracker,
    SimpleProgressTracker,
    create_progress_tracker,
    display_result,
)
from batchflow.progress.base import format_duration
from batchflow.scheduler import UnitInfo
from batchflow.state import UnitState


def _progress(completed, failed, total, running=0, pending=0, cycle=1) -> Event:
    return Event.progress(
        completed=completed,
        failed=failed,
        total=total,
        running=running,
        pending=pending,
        cycle=cycle,
    )


class TestSimpleProgressTracker:
    def test_counts_come_from_progress_events(self):
        stream = io.StringIO()
        tracker = SimpleProgressTracker(total=3, stream=stream)
        tracker(Event.unit_failed("100_2", "FAILED"))
        tracker(Event.unit_finished("100_1"))
        tracker(_progress(completed=1, failed=1, total=3, running=1))

        assert (tracker.completed, tracker.failed, tracker.running) == (1, 1, 1)
        assert "[FAIL] 100_2: FAILED" in stream.getvalue()

    def test_prints_only_when_counts_change(self):
        stream = io.StringIO()
        tracker = SimpleProgressTracker(total=2, title="demo", stream=stream)
        tracker(_progress(0, 0, 2, pending=2, cycle=1))
        tracker(_progress(0, 0, 2, pending=2, cycle=2))
        tracker(_progress(1, 0, 2, pending=1, cycle=3))
        lines = [line for line in stream.getvalue().splitlines() if "[demo]" in line]
        assert len(lines) == 2
        assert "1/2 (50%)" in lines[-1]

    def test_submissions(self):
        stream = io.StringIO()
        tracker = SimpleProgressTracker(stream=stream)
        tracker(Event.unit_submitted("101", task="s1"))
        assert tracker.submitted == 1
        assert "[submit] 101 (s1)" in stream.getvalue()

    def test_context_manager_summary(self):
        stream = io.StringIO()
        with SimpleProgressTracker(total=1, stream=stream) as tracker:
            tracker(_progress(1, 0, 1))
        assert "Completed: 1" in stream.getvalue()

    def test_satisfies_protocol(self):
        assert isinstance(SimpleProgressTracker(), ProgressTracker)


class TestRichProgressTracker:
    def test_tracks_counts(self):
        console = Console(file=io.StringIO(), force_terminal=False)
        with RichProgressTracker(total=2, console=console) as tracker:
            tracker(Event.unit_submitted("100", task=None, units=2))
            tracker(Event.unit_transition("100_1", "PENDING", "RUNNING"))
            tracker(_progress(completed=2, failed=0, total=2, cycle=4))
        assert tracker.completed == 2
        assert tracker.cycles == 4
        assert tracker.other == 0
        assert tracker.unit_states == {"100_1": "RUNNING"}
        assert [a[1] for a in tracker.activity] == ["move", "submit"]
        assert "Finished" in console.file.getvalue()


class TestFactory:
    def test_styles(self):
        assert create_progress_tracker(style="none") is None
        assert isinstance(create_progress_tracker(style="simple"), SimpleProgressTracker)
        assert isinstance(create_progress_tracker(style="rich"), RichProgressTracker)

    def test_auto_without_terminal(self, monkeypatch):
        monkeypatch.setattr("sys.stdout", io.StringIO())
        assert isinstance(create_progress_tracker(style="auto"), SimpleProgressTracker)

    def test_unknown_style(self):
        with pytest.raises(ValueError, match="Unknown progress style"):
            create_progress_tracker(style="fancy")


def test_format_duration():
    assert format_duration(12) == "12s"
    assert format_duration(90) == "1.5m"
    assert format_duration(7200) == "2.0h"


class TestDisplayResult:
    def _result(self) -> MonitorResult:
        snapshot = AggregateSnapshot.from_states(
            {"100_1": UnitState.COMPLETED, "100_2": UnitState.TIMEOUT}
        )
        return MonitorResult(
            success=False,
            snapshot=snapshot,
            cycles=7,
            units={
                "100_1": UnitInfo("100_1", UnitState.COMPLETED, "0:0", "00:10:00"),
                "100_2": UnitInfo("100_2", UnitState.TIMEOUT, "0:15", "02:00:00"),
            },
            task_names={"100_1": "s1", "100_2": "s2"},
        )

    def test_failure_summary(self):
        console = Console(file=io.StringIO(), width=120)
        display_result(self._result(), console=console)
        out = console.file.getvalue()
        assert "FAILURE" in out
        assert "TIMEOUT" in out
        assert "s2" in out
        assert "7" in out

    def test_without_units(self):
        console = Console(file=io.StringIO(), width=120)
        display_result(self._result(), console=console, show_units=False)
        assert "02:00:00" not in console.file.getvalue()
