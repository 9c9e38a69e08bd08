"""
Rich progress tracker for terminal output.
"""

from __future__ import annotations

import time
from collections import deque
from typing import TYPE_CHECKING, Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

from batchflow.events import EventKind
from batchflow.progress.base import format_duration

if TYPE_CHECKING:
    from batchflow.events import Event

# (label, style) per activity marker
_MARKERS = {
    "submit": ("↑ submit", "cyan"),
    "done": ("✓ done", "green"),
    "failed": ("✗ fail", "red"),
    "move": ("● state", "blue"),
}


class RichProgressTracker:
    """
    Live progress display with rich.

    The bar counts terminal units against the run's total. Below it sit a
    feed of the latest submissions and state changes (stamped with the poll
    cycle they were seen in) and a one-line tally of the last snapshot.

    Example:
        with RichProgressTracker(total=10, title="genomics") as tracker:
            Runner(on_event=tracker).monitor(record)
    """

    def __init__(
        self,
        total: int = 0,
        title: str = "batchflow",
        show_recent: int = 5,
        console: Console | None = None,
    ) -> None:
        """
        Args:
            total: Units expected (updated from PROGRESS events).
            title: Title for the progress display.
            show_recent: Number of activity lines to keep.
            console: Rich console instance (created if None).
        """
        self.total = total
        self.title = title
        self.console = console or Console()

        self.completed = 0
        self.failed = 0
        self.running = 0
        self.pending = 0
        self.cycles = 0
        self.unit_states: dict[str, str] = {}
        self.activity: deque[tuple[int, str, str, str]] = deque(maxlen=show_recent)
        self.start_time = time.time()

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
            expand=False,
        )
        self._bar = None
        self.live: Live | None = None

    # -- rendering -----------------------------------------------------------

    @property
    def other(self) -> int:
        """Units neither terminal, running nor pending in the last snapshot."""
        return max(self.total - self.completed - self.failed - self.running - self.pending, 0)

    def _tally(self) -> Text:
        tally = Text()
        for count, label, style in (
            (self.completed, "completed", "green"),
            (self.failed, "failed", "red"),
            (self.running, "running", "cyan"),
            (self.pending, "pending", "yellow"),
            (self.other, "other", "dim"),
        ):
            if tally:
                tally.append("  ")
            tally.append(str(count), style=f"bold {style}")
            tally.append(f" {label}", style="dim")
        tally.append(f"   cycle {self.cycles}", style="dim")
        return tally

    def _activity_table(self) -> Table:
        table = Table(show_header=False, box=None, padding=(0, 1), collapse_padding=True)
        table.add_column("Cycle", justify="right", style="dim", width=4)
        table.add_column("Marker", width=10)
        table.add_column("Unit", style="cyan", width=16)
        table.add_column("Details", overflow="ellipsis")
        for cycle, marker, unit_id, details in self.activity:
            label, style = _MARKERS[marker]
            table.add_row(str(cycle), Text(label, style=style), unit_id, details)
        return table

    def _render(self) -> Group:
        parts: list[Any] = [self.progress]
        if self.activity:
            parts.append(
                Panel(
                    self._activity_table(),
                    title="[dim]Recent Activity[/dim]",
                    border_style="dim",
                    padding=(0, 1),
                )
            )
        parts.append(
            Panel(self._tally(), title=f"[bold]{self.title}[/bold]", border_style="blue")
        )
        return Group(*parts)

    # -- events --------------------------------------------------------------

    def _note(self, marker: str, unit_id: str, details: str) -> None:
        self.activity.appendleft((self.cycles, marker, unit_id, details))

    def __call__(self, event: Event) -> None:
        """Handle batchflow events."""
        unit_id = event.unit_id or ""
        payload = event.payload or {}
        task = payload.get("task") or ""

        if event.kind == EventKind.UNIT_SUBMITTED:
            units = payload.get("units", 1)
            details = task or (f"{units} array units" if units > 1 else "")
            self._note("submit", unit_id, details)

        elif event.kind == EventKind.UNIT_TRANSITION:
            self.unit_states[unit_id] = payload.get("new", "")
            self._note("move", unit_id, f"{payload.get('old', '')} -> {payload.get('new', '')}")

        elif event.kind == EventKind.UNIT_FINISHED:
            self._note("done", unit_id, task or payload.get("elapsed") or "")

        elif event.kind == EventKind.UNIT_FAILED:
            state = payload.get("state", "FAILED")
            self.unit_states[unit_id] = state
            self._note("failed", unit_id, f"{task}: {state}" if task else state)

        elif event.kind == EventKind.PROGRESS:
            self.total = payload.get("total", self.total)
            self.completed = payload.get("completed", self.completed)
            self.failed = payload.get("failed", self.failed)
            self.running = payload.get("running", self.running)
            self.pending = payload.get("pending", self.pending)
            self.cycles = payload.get("cycle", self.cycles)
            if self._bar is not None:
                self.progress.update(
                    self._bar,
                    total=self.total or None,
                    completed=self.completed + self.failed,
                )

        if self.live is not None:
            self.live.update(self._render())

    # -- context manager -----------------------------------------------------

    def __enter__(self) -> RichProgressTracker:
        """Start the live display."""
        self._bar = self.progress.add_task("Monitoring units", total=self.total or None)
        self.live = Live(
            self._render(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
        )
        self.live.__enter__()
        return self

    def __exit__(self, *args: Any) -> None:
        """Stop the live display and print the closing panel."""
        if self.live is not None:
            self.live.__exit__(*args)
            self.live = None

        elapsed = format_duration(time.time() - self.start_time)
        if self.completed + self.failed < self.total or self.total == 0:
            headline, border = "[yellow]… Stopped before completion[/yellow]", "yellow"
        elif self.failed:
            headline, border = "[red]✗ Finished with failures[/red]", "red"
        else:
            headline, border = "[green]✓ Finished[/green]", "green"

        self.console.print()
        self.console.print(
            Panel(
                f"{headline} after {self.cycles} poll cycle(s), {elapsed}\n"
                f"  Completed: [green]{self.completed}[/green]\n"
                f"  Failed: [red]{self.failed}[/red]",
                title="Run Complete",
                border_style=border,
            )
        )
