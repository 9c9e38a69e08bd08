"""
Base classes for progress tracking.

Provides the ProgressTracker protocol and SimpleProgressTracker implementation.
"""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING, Any, Protocol, TextIO, runtime_checkable

from batchflow.events import EventKind

if TYPE_CHECKING:
    from batchflow.events import Event


@runtime_checkable
class ProgressTracker(Protocol):
    """
    Protocol for progress trackers.

    Trackers receive events from strategies and the monitor and display
    progress to the user. Counts come from PROGRESS events, which carry the
    monitor's snapshot for the cycle.

    Trackers should be usable as context managers for setup/teardown.
    """

    total: int
    completed: int
    failed: int

    def __call__(self, event: Event) -> None:
        """Handle an event."""
        ...

    def __enter__(self) -> ProgressTracker:
        """Enter the context (start display)."""
        ...

    def __exit__(self, *args: Any) -> None:
        """Exit the context (cleanup display)."""
        ...


def format_duration(seconds: float) -> str:
    """Compact human-readable duration."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


class SimpleProgressTracker:
    """
    Simple text-based progress tracker.

    Prints a line whenever the counts change, plus one line per failed
    unit.

    Example:
        with SimpleProgressTracker(total=10) as tracker:
            Runner(on_event=tracker).monitor(record)
    """

    def __init__(
        self,
        total: int = 0,
        title: str = "batchflow",
        show_failures: bool = True,
        stream: TextIO | None = None,
    ) -> None:
        """
        Args:
            total: Units expected (updated from PROGRESS events).
            title: Title for the progress display.
            show_failures: Whether to print a line per failed unit.
            stream: Output stream (default: stdout).
        """
        self.total = total
        self.title = title
        self.show_failures = show_failures
        self.stream = stream or sys.stdout

        self.completed = 0
        self.failed = 0
        self.running = 0
        self.pending = 0
        self.submitted = 0
        self.start_time = time.time()
        self._last_counts: tuple[int, ...] | None = None

    def _print(self, message: str) -> None:
        print(message, file=self.stream)

    def __call__(self, event: Event) -> None:
        """Handle batchflow events."""
        if event.kind == EventKind.UNIT_SUBMITTED:
            self.submitted += 1
            task = event.payload.get("task")
            label = f" ({task})" if task else ""
            self._print(f"  [submit] {event.unit_id}{label}")

        elif event.kind == EventKind.UNIT_FAILED:
            if self.show_failures:
                state = event.payload.get("state", "FAILED")
                task = event.payload.get("task")
                label = f" ({task})" if task else ""
                self._print(f"  [FAIL] {event.unit_id}{label}: {state}")

        elif event.kind == EventKind.PROGRESS:
            payload = event.payload
            self.total = payload.get("total", self.total)
            self.completed = payload.get("completed", self.completed)
            self.failed = payload.get("failed", self.failed)
            self.running = payload.get("running", self.running)
            self.pending = payload.get("pending", self.pending)
            counts = (self.total, self.completed, self.failed, self.running, self.pending)
            if counts != self._last_counts:
                self._last_counts = counts
                self._print_progress()

    def _print_progress(self) -> None:
        """Print current progress."""
        elapsed = time.time() - self.start_time
        done = self.completed + self.failed
        pct = (done / self.total * 100) if self.total > 0 else 0
        self._print(
            f"  [{self.title}] {done}/{self.total} ({pct:.0f}%) "
            f"ok={self.completed} fail={self.failed} "
            f"run={self.running} pend={self.pending} "
            f"elapsed: {format_duration(elapsed)}"
        )

    def __enter__(self) -> SimpleProgressTracker:
        """Start tracking."""
        self._print(f"\n{self.title}")
        self._print("-" * 60)
        return self

    def __exit__(self, *args: Any) -> None:
        """Finish tracking."""
        elapsed = time.time() - self.start_time
        self._print("-" * 60)
        self._print(f"Finished in {format_duration(elapsed)}")
        self._print(f"  Completed: {self.completed}")
        self._print(f"  Failed: {self.failed}")
