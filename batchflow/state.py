"""
Unit state model.

Slurm reports job states as free-form strings ("CANCELLED by 1234",
"COMPLETED", "PD", ...). This module maps them onto a closed enum and
classifies every member into exactly one of three classes:

- non-terminal: the unit may still change state
- terminal-success: the unit finished and counts as completed
- terminal-failure: the unit finished and counts as failed

UNKNOWN is what a unit reads as when no backend answered. It is always
non-terminal; a unit is never declared done because we failed to ask.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class UnitState(str, Enum):
    """Scheduler state of one monitored unit."""

    PENDING = "PENDING"
    CONFIGURING = "CONFIGURING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    COMPLETING = "COMPLETING"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    OUT_OF_MEMORY = "OUT_OF_MEMORY"
    NODE_FAIL = "NODE_FAIL"
    PREEMPTED = "PREEMPTED"
    BOOT_FAIL = "BOOT_FAIL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> UnitState:
        """
        Normalize a raw scheduler state string.

        - Strips whitespace and uppercases
        - Keeps the first word ("CANCELLED by 123" -> CANCELLED)
        - Drops a trailing '+' (sacct truncation marker)
        - Expands squeue short codes (PD, R, CG, ...)

        Unrecognized strings become UNKNOWN rather than being guessed at.

        Args:
            raw: State string from sacct or squeue, or None.

        Returns:
            The matching UnitState.
        """
        if raw is None:
            return cls.UNKNOWN
        words = raw.strip().upper().split()
        if not words:
            return cls.UNKNOWN
        token = words[0].rstrip("+")
        token = _SHORT_CODES.get(token, token)
        try:
            return cls(token)
        except ValueError:
            logger.debug("Unrecognized scheduler state %r, treating as UNKNOWN", raw)
            return cls.UNKNOWN

    @property
    def state_class(self) -> StateClass:
        """Partition membership of this state."""
        return classify(self)

    @property
    def is_terminal(self) -> bool:
        """True for terminal-success and terminal-failure states."""
        return classify(self) is not StateClass.NON_TERMINAL


class StateClass(str, Enum):
    """The three classes every UnitState falls into."""

    NON_TERMINAL = "non-terminal"
    TERMINAL_SUCCESS = "terminal-success"
    TERMINAL_FAILURE = "terminal-failure"


# squeue compact state codes
_SHORT_CODES: dict[str, str] = {
    "PD": "PENDING",
    "CF": "CONFIGURING",
    "R": "RUNNING",
    "S": "SUSPENDED",
    "CD": "COMPLETED",
    "CG": "COMPLETING",
    "F": "FAILED",
    "CA": "CANCELLED",
    "TO": "TIMEOUT",
    "OOM": "OUT_OF_MEMORY",
    "NF": "NODE_FAIL",
    "PR": "PREEMPTED",
    "BF": "BOOT_FAIL",
}

_CLASSES: dict[UnitState, StateClass] = {
    UnitState.PENDING: StateClass.NON_TERMINAL,
    UnitState.CONFIGURING: StateClass.NON_TERMINAL,
    UnitState.RUNNING: StateClass.NON_TERMINAL,
    UnitState.SUSPENDED: StateClass.NON_TERMINAL,
    UnitState.UNKNOWN: StateClass.NON_TERMINAL,
    UnitState.COMPLETED: StateClass.TERMINAL_SUCCESS,
    UnitState.COMPLETING: StateClass.TERMINAL_SUCCESS,
    UnitState.FAILED: StateClass.TERMINAL_FAILURE,
    UnitState.CANCELLED: StateClass.TERMINAL_FAILURE,
    UnitState.TIMEOUT: StateClass.TERMINAL_FAILURE,
    UnitState.OUT_OF_MEMORY: StateClass.TERMINAL_FAILURE,
    UnitState.NODE_FAIL: StateClass.TERMINAL_FAILURE,
    UnitState.PREEMPTED: StateClass.TERMINAL_FAILURE,
    UnitState.BOOT_FAIL: StateClass.TERMINAL_FAILURE,
}


def classify(state: UnitState | str) -> StateClass:
    """
    Classify a state into non-terminal, terminal-success or terminal-failure.

    Accepts raw strings too; they are parsed with UnitState.parse first, so
    classifying the same input twice always gives the same answer.

    Args:
        state: A UnitState or a raw scheduler state string.

    Returns:
        The StateClass of the state.
    """
    if not isinstance(state, UnitState):
        state = UnitState.parse(state)
    return _CLASSES[state]
