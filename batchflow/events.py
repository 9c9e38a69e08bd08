"""
Events system: Stable event schema for hooks and progress tracking.

Ordering guarantees:
- Synchronous emission: Events are emitted inline from the controlling process
- Best-effort delivery: If a callback raises, the exception is logged and
  submission/monitoring continues
- Per-unit ordering: For one unit, events are ordered
  (unit_submitted < unit_transition* < unit_finished | unit_failed)
- Cross-unit ordering: Units are reported in poll order within a cycle
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Types of events emitted by strategies and the monitor."""

    UNIT_SUBMITTED = "unit_submitted"
    UNIT_TRANSITION = "unit_transition"
    UNIT_FINISHED = "unit_finished"
    UNIT_FAILED = "unit_failed"
    PROGRESS = "progress"
    LOG = "log"


@dataclass(frozen=True)
class Event:
    """
    An event emitted while a run is submitted or monitored.

    Attributes:
        kind: The type of event.
        unit_id: The scheduler unit this event relates to (None for global events).
        timestamp: When the event occurred.
        payload: Event-specific data.
    """

    kind: EventKind
    unit_id: str | None
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unit_submitted(cls, unit_id: str, **extra: Any) -> Event:
        """Create a unit_submitted event."""
        return cls(
            kind=EventKind.UNIT_SUBMITTED,
            unit_id=unit_id,
            timestamp=datetime.now(),
            payload=extra,
        )

    @classmethod
    def unit_transition(cls, unit_id: str, old: str, new: str) -> Event:
        """Create a unit_transition event."""
        return cls(
            kind=EventKind.UNIT_TRANSITION,
            unit_id=unit_id,
            timestamp=datetime.now(),
            payload={"old": old, "new": new},
        )

    @classmethod
    def unit_finished(cls, unit_id: str, **extra: Any) -> Event:
        """Create a unit_finished event."""
        return cls(
            kind=EventKind.UNIT_FINISHED,
            unit_id=unit_id,
            timestamp=datetime.now(),
            payload=extra,
        )

    @classmethod
    def unit_failed(cls, unit_id: str, state: str, **extra: Any) -> Event:
        """Create a unit_failed event."""
        return cls(
            kind=EventKind.UNIT_FAILED,
            unit_id=unit_id,
            timestamp=datetime.now(),
            payload={"state": state, **extra},
        )

    @classmethod
    def progress(
        cls,
        completed: int,
        failed: int,
        total: int,
        running: int = 0,
        pending: int = 0,
        cycle: int = 0,
    ) -> Event:
        """Create a progress event from an aggregate snapshot."""
        return cls(
            kind=EventKind.PROGRESS,
            unit_id=None,
            timestamp=datetime.now(),
            payload={
                "completed": completed,
                "failed": failed,
                "total": total,
                "running": running,
                "pending": pending,
                "cycle": cycle,
            },
        )

    @classmethod
    def log(cls, unit_id: str | None, message: str, level: str = "info") -> Event:
        """Create a log event."""
        return cls(
            kind=EventKind.LOG,
            unit_id=unit_id,
            timestamp=datetime.now(),
            payload={"message": message, "level": level},
        )


# Type alias for event callbacks
EventCallback = Callable[[Event], None]


def emit_event(callback: EventCallback | None, event: Event) -> None:
    """
    Emit an event to a callback, with best-effort delivery.

    If the callback raises an exception, it is logged and the caller
    continues; a broken display must not stop monitoring.

    Args:
        callback: The event callback (may be None).
        event: The event to emit.
    """
    if callback is None:
        return

    try:
        callback(event)
    except Exception as e:
        logger.warning(f"Event callback failed for {event.kind}: {e}")
