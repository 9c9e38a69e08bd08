"""
Status aggregation and the monitoring loop.

Provides:
- AggregateSnapshot: Per-cycle counts plus the last-seen state of each unit
- StatusAggregator: Builds snapshots and logs per-unit state transitions
- Monitor: Polls until every unit is terminal (or the budget runs out)
- MonitorResult: Final verdict and diagnostics
- unit_task_names: Map unit ids back to task names for reporting

Invariant, every cycle:
    completed + failed + running + pending + other == total

The loop stops at the first cycle where completed + failed == total
(total > 0), and the verdict is a failure iff failed > 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from batchflow.errors import MonitoringCancelled, MonitoringTimeout
from batchflow.events import Event, EventCallback, emit_event
from batchflow.poller import StatePoller, Ticker
from batchflow.registry import JobRegistryRecord
from batchflow.scheduler import UnitInfo
from batchflow.state import StateClass, UnitState, classify
from batchflow.types import JobHandle, SubmissionKind, TaskList

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# AggregateSnapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregateSnapshot:
    """
    Status summary for one poll cycle.

    Invariant: total == completed + failed + running + pending + other

    Attributes:
        total: Units expected (task count, or declared array size).
        running: Units in RUNNING.
        pending: Units in PENDING.
        completed: Units in a terminal-success state.
        failed: Units in a terminal-failure state.
        other: Remaining non-terminal units (CONFIGURING, SUSPENDED,
            UNKNOWN, or not yet visible to either backend).
        states: Last-seen state per unit id.
    """

    total: int
    running: int
    pending: int
    completed: int
    failed: int
    other: int
    states: Mapping[str, UnitState] = field(default_factory=dict, compare=False)

    @classmethod
    def from_states(
        cls, states: Mapping[str, UnitState], total: int | None = None
    ) -> AggregateSnapshot:
        """
        Count states into buckets.

        Args:
            states: State per observed unit.
            total: Expected unit count; defaults to the number observed.
                Units expected but not observed count as ``other``.
        """
        running = pending = completed = failed = other = 0
        for state in states.values():
            cls_ = classify(state)
            if cls_ is StateClass.TERMINAL_SUCCESS:
                completed += 1
            elif cls_ is StateClass.TERMINAL_FAILURE:
                failed += 1
            elif state is UnitState.RUNNING:
                running += 1
            elif state is UnitState.PENDING:
                pending += 1
            else:
                other += 1

        observed = len(states)
        total = observed if total is None else max(total, observed)
        other += total - observed

        return cls(
            total=total,
            running=running,
            pending=pending,
            completed=completed,
            failed=failed,
            other=other,
            states=dict(states),
        )

    @property
    def done(self) -> int:
        """Units in a terminal state (completed + failed)."""
        return self.completed + self.failed

    @property
    def is_finished(self) -> bool:
        """True once every expected unit is terminal."""
        return self.total > 0 and self.done == self.total

    @property
    def failed_units(self) -> list[str]:
        """Ids of units in a terminal-failure state."""
        return [
            unit_id
            for unit_id, state in self.states.items()
            if classify(state) is StateClass.TERMINAL_FAILURE
        ]

    def __str__(self) -> str:
        return (
            f"AggregateSnapshot(total={self.total}, completed={self.completed}, "
            f"failed={self.failed}, running={self.running}, pending={self.pending}, "
            f"other={self.other})"
        )


# ---------------------------------------------------------------------------
# StatusAggregator
# ---------------------------------------------------------------------------


class StatusAggregator:
    """
    Reduces per-unit states to snapshots and reports transitions.

    The per-unit last-seen map only drives transition logging; termination
    is decided from the counts alone. A unit's first sighting is not a
    transition.
    """

    def __init__(
        self,
        on_event: EventCallback | None = None,
        task_names: Mapping[str, str] | None = None,
    ) -> None:
        """
        Args:
            on_event: Optional callback for transition and progress events.
            task_names: Optional unit id -> task name mapping for log lines.
        """
        self._on_event = on_event
        self._task_names = dict(task_names or {})
        self._last: dict[str, UnitState] = {}
        self.transitions: list[tuple[str, UnitState, UnitState]] = []

    def set_event_callback(self, callback: EventCallback | None) -> None:
        """Set the event callback for progress tracking."""
        self._on_event = callback

    def _label(self, unit_id: str) -> str:
        task = self._task_names.get(unit_id)
        return f"{unit_id} ({task})" if task else unit_id

    def observe(
        self,
        units: Mapping[str, UnitInfo | UnitState],
        total: int | None = None,
    ) -> AggregateSnapshot:
        """
        Fold one poll cycle into a snapshot.

        Args:
            units: Unit id -> UnitInfo (or bare UnitState) for this cycle.
            total: Expected unit count, if known.

        Returns:
            The snapshot for this cycle. ``self.transitions`` holds the
            transitions detected in it.
        """
        states = {
            unit_id: value.state if isinstance(value, UnitInfo) else value
            for unit_id, value in units.items()
        }

        self.transitions = []
        for unit_id, new in states.items():
            old = self._last.get(unit_id)
            if old is None or old is new:
                continue
            self.transitions.append((unit_id, old, new))
            logger.info(f"Unit {self._label(unit_id)}: {old.value} -> {new.value}")
            emit_event(self._on_event, Event.unit_transition(unit_id, old.value, new.value))
            self._emit_terminal(unit_id, old, new, units.get(unit_id))

        for unit_id, new in states.items():
            if unit_id not in self._last:
                # Units first seen already terminal still get their final event
                self._emit_terminal(unit_id, None, new, units.get(unit_id))

        self._last.update(states)
        return AggregateSnapshot.from_states(states, total)

    def _emit_terminal(
        self,
        unit_id: str,
        old: UnitState | None,
        new: UnitState,
        info: UnitInfo | UnitState | None,
    ) -> None:
        if old is not None and old.is_terminal:
            return
        extra = {}
        if isinstance(info, UnitInfo):
            extra = {"exit_code": info.exit_code, "elapsed": info.elapsed}
        task = self._task_names.get(unit_id)
        if task:
            extra["task"] = task
        cls_ = classify(new)
        if cls_ is StateClass.TERMINAL_SUCCESS:
            emit_event(self._on_event, Event.unit_finished(unit_id, **extra))
        elif cls_ is StateClass.TERMINAL_FAILURE:
            logger.warning(f"Unit {self._label(unit_id)} failed: {new.value}")
            emit_event(self._on_event, Event.unit_failed(unit_id, new.value, **extra))


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonitorResult:
    """
    Outcome of a monitoring loop.

    Attributes:
        success: False iff any unit ended in a terminal-failure state.
        snapshot: The final snapshot.
        cycles: Number of poll cycles run.
        units: Final per-unit info (exit codes, elapsed time).
        task_names: Unit id -> task name, where known.
    """

    success: bool
    snapshot: AggregateSnapshot
    cycles: int
    units: Mapping[str, UnitInfo] = field(default_factory=dict)
    task_names: Mapping[str, str] = field(default_factory=dict)

    @property
    def failed_tasks(self) -> list[str]:
        """Failed units, labelled with task names where known."""
        return [
            self.task_names.get(unit_id, unit_id)
            for unit_id in self.snapshot.failed_units
        ]


class Monitor:
    """
    Polls a submitted run until every unit is terminal.

    Each cycle queries all units once, folds the result into a snapshot,
    and stops at the first cycle where completed + failed == total. Between
    cycles it waits on a Ticker, which is the loop's only suspension point.
    """

    def __init__(
        self,
        poller: StatePoller,
        ticker: Ticker | None = None,
        max_cycles: int | None = None,
        on_event: EventCallback | None = None,
        task_names: Mapping[str, str] | None = None,
    ) -> None:
        """
        Args:
            poller: Poller for the run's registry record.
            ticker: Wait between cycles (default: 30 s real time).
            max_cycles: Optional poll budget; exhausting it raises
                MonitoringTimeout.
            on_event: Optional callback for progress events.
            task_names: Optional unit id -> task name mapping.
        """
        self._poller = poller
        self._ticker = ticker or Ticker()
        self._max_cycles = max_cycles
        self._on_event = on_event
        self._task_names = dict(task_names or {})
        self._aggregator = StatusAggregator(on_event=on_event, task_names=task_names)
        self.last_snapshot: AggregateSnapshot | None = None

    def set_event_callback(self, callback: EventCallback | None) -> None:
        """Set the event callback for progress tracking."""
        self._on_event = callback
        self._aggregator.set_event_callback(callback)

    def cancel(self) -> None:
        """Stop the loop at its next wait."""
        self._ticker.cancel()

    def run(self) -> MonitorResult:
        """
        Poll until done.

        Returns:
            MonitorResult with the verdict and final snapshot.

        Raises:
            MonitoringTimeout: If max_cycles cycles pass without finishing.
            MonitoringCancelled: If cancel() was called.
        """
        cycles = 0
        logger.info(
            f"Monitoring {self._poller.record.kind.value} job(s) "
            f"{','.join(self._poller.record.ids)}"
        )
        while True:
            units = self._poller.poll()
            cycles += 1
            snapshot = self._aggregator.observe(units, self._poller.declared_total)
            self.last_snapshot = snapshot

            logger.debug(f"Cycle {cycles}: {snapshot}")
            emit_event(
                self._on_event,
                Event.progress(
                    completed=snapshot.completed,
                    failed=snapshot.failed,
                    total=snapshot.total,
                    running=snapshot.running,
                    pending=snapshot.pending,
                    cycle=cycles,
                ),
            )

            if snapshot.is_finished:
                break
            if self._max_cycles is not None and cycles >= self._max_cycles:
                raise MonitoringTimeout(snapshot, cycles)
            if not self._ticker.wait():
                raise MonitoringCancelled(snapshot, cycles)

        success = snapshot.failed == 0
        if success:
            logger.info(f"All {snapshot.total} unit(s) completed successfully")
        else:
            logger.error(
                f"{snapshot.failed} of {snapshot.total} unit(s) failed: "
                f"{', '.join(snapshot.failed_units)}"
            )
        return MonitorResult(
            success=success,
            snapshot=snapshot,
            cycles=cycles,
            units=dict(units),
            task_names=self._task_names,
        )


# ---------------------------------------------------------------------------
# Task name mapping
# ---------------------------------------------------------------------------


def unit_task_names(
    record: JobRegistryRecord,
    tasks: TaskList | None = None,
    handles: Sequence[JobHandle] = (),
) -> dict[str, str]:
    """
    Map unit ids to task names for reporting.

    ARRAY units map through their index into the task list; INDIVIDUAL ids
    map through the submission handles (their registry order need not match
    the task order).

    Args:
        record: The run's registry record.
        tasks: The run's task list, if available.
        handles: Handles returned by the submission strategy, if available.
    """
    names: dict[str, str] = {}
    for handle in handles:
        if handle.task:
            names[handle.scheduler_id] = handle.task
    if record.kind is SubmissionKind.ARRAY and tasks is not None and len(tasks):
        parent = record.ids[0]
        if len(tasks) == 1:
            names[parent] = tasks.names[0]
        for index, name in enumerate(tasks.names, start=1):
            names[f"{parent}_{index}"] = name
    return names
