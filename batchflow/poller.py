"""
State polling.

Provides:
- Clock / SystemClock: Injectable time source
- Ticker: Cancellable fixed-interval waits between poll cycles
- StatePoller: Queries the state of every unit of a registry record
- wait_for_unit: Block until one unit reaches a terminal state

Backends are consulted in priority order: sacct first (authoritative, and
still answers after a unit has left the queue), then squeue for anything
sacct does not know about yet. A unit neither backend answers for reads as
UNKNOWN for that cycle and is asked about again next cycle.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Protocol

from batchflow.errors import MonitoringCancelled, MonitoringTimeout, PollingBackendUnavailable
from batchflow.registry import JobRegistryRecord
from batchflow.scheduler import SlurmClient, UnitInfo
from batchflow.state import UnitState
from batchflow.types import SubmissionKind

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class Clock(Protocol):
    """Time source used by tickers."""

    def monotonic(self) -> float:
        """Seconds from an arbitrary fixed point."""
        ...

    def sleep(self, seconds: float, interrupt: threading.Event | None = None) -> None:
        """Sleep, returning early if *interrupt* is set."""
        ...


class SystemClock:
    """Real wall-clock time."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, interrupt: threading.Event | None = None) -> None:
        if interrupt is not None:
            interrupt.wait(seconds)
        else:
            time.sleep(seconds)


class Ticker:
    """
    Fixed-interval ticker that can be cancelled from another thread.

    Example:
        ticker = Ticker(interval=30.0)
        while not done():
            if not ticker.wait():
                break  # cancelled
    """

    def __init__(self, interval: float = POLL_INTERVAL_SECONDS, clock: Clock | None = None) -> None:
        self.interval = interval
        self._clock = clock or SystemClock()
        self._cancelled = threading.Event()

    def wait(self) -> bool:
        """
        Sleep one interval.

        Returns:
            False if the ticker was cancelled (before or during the wait).
        """
        if self._cancelled.is_set():
            return False
        self._clock.sleep(self.interval, self._cancelled)
        return not self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop the ticker; a wait in progress returns promptly."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


def _array_index(unit_id: str) -> int | None:
    match = re.match(r"^\d+_(\d+)$", unit_id)
    return int(match.group(1)) if match else None


class StatePoller:
    """
    Queries the state of every unit of a submitted run.

    For INDIVIDUAL records the units are the registry ids. For ARRAY records
    the units are ``<parent>_<index>``, discovered from whatever the
    backends return each cycle; indices above the declared array size are
    ignored.
    """

    def __init__(
        self,
        client: SlurmClient,
        record: JobRegistryRecord,
        array_size: int | None = None,
    ) -> None:
        """
        Args:
            client: Slurm command wrapper.
            record: What was submitted.
            array_size: Declared array cardinality (ARRAY records only).
                When None, the size is taken from the discovered units.
        """
        self._client = client
        self.record = record
        self._array_size = array_size
        # Units seen in any previous cycle, in discovery order
        self._known: dict[str, None] = {}
        if record.kind is SubmissionKind.INDIVIDUAL:
            self._known = dict.fromkeys(record.ids)

    @property
    def declared_total(self) -> int | None:
        """Unit count known up front, if any."""
        if self.record.kind is SubmissionKind.INDIVIDUAL:
            return len(self.record.ids)
        return self._array_size

    @property
    def known_units(self) -> list[str]:
        """Every unit id discovered so far."""
        return list(self._known)

    def query_unit(self, unit_id: str) -> UnitInfo:
        """
        Query a single unit: sacct first, then squeue.

        Returns:
            The unit's info; state UNKNOWN (source "none") if neither
            backend answered.
        """
        sacct = self._client.sacct([unit_id])
        if sacct and unit_id in sacct:
            return sacct[unit_id]
        squeue = self._client.squeue(unit_id)
        if squeue and unit_id in squeue:
            return UnitInfo(unit_id=unit_id, state=squeue[unit_id], source="squeue")
        return self._unavailable(unit_id)

    def poll(self) -> dict[str, UnitInfo]:
        """
        Run one poll cycle.

        Returns:
            Mapping unit id -> info for every known unit.
        """
        if self.record.kind is SubmissionKind.INDIVIDUAL:
            return self._poll_individual()
        return self._poll_array()

    # -- internals -----------------------------------------------------------

    def _unavailable(self, unit_id: str) -> UnitInfo:
        err = PollingBackendUnavailable(f"No backend reported a state for {unit_id}")
        logger.warning(f"{err}; treating as {UnitState.UNKNOWN.value} this cycle")
        return UnitInfo(unit_id=unit_id, state=UnitState.UNKNOWN, source="none")

    def _poll_individual(self) -> dict[str, UnitInfo]:
        ids = list(self.record.ids)
        sacct = self._client.sacct(ids) or {}
        result: dict[str, UnitInfo] = {}
        for unit_id in ids:
            if unit_id in sacct:
                result[unit_id] = sacct[unit_id]
                continue
            squeue = self._client.squeue(unit_id)
            if squeue and unit_id in squeue:
                result[unit_id] = UnitInfo(
                    unit_id=unit_id, state=squeue[unit_id], source="squeue"
                )
            else:
                result[unit_id] = self._unavailable(unit_id)
        return result

    def _poll_array(self) -> dict[str, UnitInfo]:
        parent = self.record.ids[0]
        prefix = f"{parent}_"

        sacct = self._client.sacct([parent])
        squeue = self._client.squeue(parent)

        answered: dict[str, UnitInfo] = {}
        # Lower priority first so sacct overwrites squeue
        for unit_id, state in (squeue or {}).items():
            answered[unit_id] = UnitInfo(unit_id=unit_id, state=state, source="squeue")
        for unit_id, info in (sacct or {}).items():
            answered[unit_id] = info

        sub_units = {
            unit_id: info
            for unit_id, info in answered.items()
            if unit_id.startswith(prefix) and self._in_bounds(unit_id)
        }
        if not sub_units and parent in answered and not self._has_sub_units():
            # Not an array after all (single-task run or a plain job)
            sub_units = {parent: answered[parent]}

        for unit_id in sorted(sub_units, key=lambda u: _array_index(u) or 0):
            self._known.setdefault(unit_id, None)

        result: dict[str, UnitInfo] = {}
        for unit_id in self._known:
            if unit_id in sub_units:
                result[unit_id] = sub_units[unit_id]
            else:
                result[unit_id] = self._unavailable(unit_id)

        if not result and sacct is None and squeue is None:
            logger.warning(
                f"Neither sacct nor squeue answered for array job {parent}"
            )
        return result

    def _in_bounds(self, unit_id: str) -> bool:
        index = _array_index(unit_id)
        if index is None:
            return False
        return self._array_size is None or 1 <= index <= self._array_size

    def _has_sub_units(self) -> bool:
        return any(_array_index(u) is not None for u in self._known)


def wait_for_unit(
    poller: StatePoller,
    unit_id: str,
    ticker: Ticker,
    max_cycles: int | None = None,
) -> UnitInfo:
    """
    Block until a unit reaches a terminal state.

    Uses the same classification as the monitor; UNKNOWN never ends the
    wait.

    Args:
        poller: Poller used for single-unit queries.
        unit_id: Unit to wait for.
        ticker: Ticker providing the wait between polls.
        max_cycles: Optional poll budget.

    Returns:
        The unit's terminal info.

    Raises:
        MonitoringTimeout: If max_cycles polls pass without a terminal state.
        MonitoringCancelled: If the ticker is cancelled.
    """
    from batchflow.monitor import AggregateSnapshot

    cycles = 0
    last: UnitInfo | None = None
    while True:
        info = poller.query_unit(unit_id)
        cycles += 1
        if last is None or last.state is not info.state:
            logger.info(f"Unit {unit_id}: {info.state.value}")
        last = info
        if info.state.is_terminal:
            return info
        if max_cycles is not None and cycles >= max_cycles:
            raise MonitoringTimeout(AggregateSnapshot.from_states({unit_id: info.state}), cycles)
        if not ticker.wait():
            raise MonitoringCancelled(
                AggregateSnapshot.from_states({unit_id: info.state}), cycles
            )
