"""
Error types raised by batchflow.

Provides:
- BatchflowError: Base class for all batchflow errors
- ConfigurationError / RegistryFormatError: Bad input, detected before submission
- SubmissionError: sbatch failed or its output could not be parsed
- TaskResolutionError: A unit could not resolve its task name at run time
- PollingBackendUnavailable: Neither sacct nor squeue answered for a unit
- UnitTerminalFailure: A unit reached a terminal-failure state
- MonitoringTimeout / MonitoringCancelled: The poll loop stopped early
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from batchflow.monitor import AggregateSnapshot
    from batchflow.state import UnitState


class BatchflowError(RuntimeError):
    """Generic error superclass for all batchflow errors."""


class ConfigurationError(BatchflowError):
    """Invalid or missing input, detected before anything is submitted."""


class RegistryFormatError(ConfigurationError):
    """A job registry record could not be parsed."""


class SubmissionError(BatchflowError):
    """
    Error raised when something goes wrong submitting a job.

    Attributes:
        submitted_ids: Scheduler ids that were accepted before the failure.
            Used by the cancellation policy to retract partial submissions.
    """

    def __init__(self, message: str, submitted_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.submitted_ids = tuple(submitted_ids)


class TaskResolutionError(BatchflowError):
    """An array index has no corresponding line in the task list."""


class PollingBackendUnavailable(BatchflowError):
    """Neither the accounting nor the live queue backend answered."""


class UnitTerminalFailure(BatchflowError):
    """
    A monitored unit reached a terminal-failure state.

    Attributes:
        unit_id: Scheduler id of the failed unit.
        state: The terminal state it reached.
        submitted_ids: Every scheduler id submitted so far in this run.
    """

    def __init__(
        self,
        unit_id: str,
        state: "UnitState",
        submitted_ids: Sequence[str] = (),
    ) -> None:
        super().__init__(f"Unit {unit_id} ended in state {state.value}")
        self.unit_id = unit_id
        self.state = state
        self.submitted_ids = tuple(submitted_ids)


class MonitoringTimeout(BatchflowError):
    """
    The poll budget ran out before every unit reached a terminal state.

    This is distinct from a unit's own scheduler-level TIMEOUT state.

    Attributes:
        snapshot: The last aggregate snapshot, for diagnosis.
        cycles: Number of poll cycles that ran.
    """

    def __init__(self, snapshot: "AggregateSnapshot", cycles: int) -> None:
        super().__init__(
            f"Monitoring gave up after {cycles} poll cycles: {snapshot}"
        )
        self.snapshot = snapshot
        self.cycles = cycles


class MonitoringCancelled(BatchflowError):
    """The monitor's ticker was cancelled before the run finished."""

    def __init__(self, snapshot: "AggregateSnapshot | None", cycles: int) -> None:
        super().__init__(f"Monitoring cancelled after {cycles} poll cycles")
        self.snapshot = snapshot
        self.cycles = cycles
