"""
Display utilities for run results.

Provides the final per-unit summary printed after monitoring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from batchflow.state import StateClass, classify

if TYPE_CHECKING:
    from batchflow.monitor import MonitorResult

_STATE_STYLES = {
    StateClass.TERMINAL_SUCCESS: "green",
    StateClass.TERMINAL_FAILURE: "red",
    StateClass.NON_TERMINAL: "yellow",
}


def display_result(
    result: MonitorResult,
    console: Console | None = None,
    show_units: bool = True,
) -> None:
    """
    Print the outcome of a monitored run.

    Args:
        result: The monitor's result.
        console: Optional rich Console instance.
        show_units: Whether to list every unit, not just the totals.

    Example:
        result = runner.monitor(registry_path)
        display_result(result)
    """
    console = console or Console()
    snapshot = result.snapshot

    if show_units and snapshot.states:
        table = Table(title="Units", show_header=True, header_style="bold")
        table.add_column("Unit", style="cyan")
        table.add_column("Task")
        table.add_column("State")
        table.add_column("Exit code", justify="right")
        table.add_column("Elapsed", justify="right")

        for unit_id, state in snapshot.states.items():
            info = result.units.get(unit_id)
            style = _STATE_STYLES[classify(state)]
            table.add_row(
                unit_id,
                result.task_names.get(unit_id, ""),
                f"[{style}]{state.value}[/{style}]",
                (info.exit_code or "") if info else "",
                (info.elapsed or "") if info else "",
            )
        console.print(table)

    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="bold")
    summary.add_column(justify="right")
    summary.add_row("Total", str(snapshot.total))
    summary.add_row("Completed", f"[green]{snapshot.completed}[/green]")
    summary.add_row("Failed", f"[red]{snapshot.failed}[/red]")
    summary.add_row("Poll cycles", str(result.cycles))
    if result.failed_tasks:
        summary.add_row("Failed tasks", ", ".join(result.failed_tasks))

    console.print()
    console.print(
        Panel(
            summary,
            title="[bold]SUCCESS[/bold]" if result.success else "[bold]FAILURE[/bold]",
            border_style="green" if result.success else "red",
        )
    )
