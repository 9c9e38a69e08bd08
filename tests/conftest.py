"""Shared fixtures: a scripted Slurm and a clock that never really sleeps."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from batchflow.descriptor import DescriptorGenerator
from batchflow.poller import Ticker
from batchflow.scheduler import SlurmClient
from batchflow.types import ResourceSpec, RunContext


class FakeSlurm:
    """
    Scripted stand-in for sbatch/sacct/squeue/scancel.

    ``sacct_rows`` and ``squeue_rows`` hold what each command reports right
    now. ``timeline`` holds per-cycle updates; ``advance()`` applies the next
    one (FakeClock calls it on every sleep). An update maps a unit id to a
    state string, or to None to drop the unit from both backends.
    """

    def __init__(self, first_id: int = 1000) -> None:
        self.calls: list[list[str]] = []
        self.submitted: list[str] = []
        self.cancelled: list[str] = []
        self.sacct_rows: dict[str, tuple[str, str, str]] = {}
        self.squeue_rows: dict[str, str] = {}
        self.timeline: list[dict[str, str | None]] = []
        self.sacct_available = True
        self.squeue_available = True
        self.fail_scripts: set[str] = set()
        self.job_ids: list[str] = []
        self.submit_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = first_id
        self._lock = threading.Lock()

    # -- scripting -----------------------------------------------------------

    def set_state(self, unit_id: str, state: str, exit_code: str = "0:0") -> None:
        """Report *state* from sacct for *unit_id*."""
        self.sacct_rows[unit_id] = (state, exit_code, "00:01:00")

    def advance(self) -> None:
        if not self.timeline:
            return
        for unit_id, state in self.timeline.pop(0).items():
            if state is None:
                self.sacct_rows.pop(unit_id, None)
                self.squeue_rows.pop(unit_id, None)
            else:
                exit_code = "0:0" if state == "COMPLETED" else "1:0"
                self.set_state(unit_id, state, exit_code)

    # -- command runner ------------------------------------------------------

    def __call__(self, cmd: list[str], timeout: float) -> tuple[int, str, str]:
        with self._lock:
            self.calls.append(list(cmd))
        handler = getattr(self, f"_{cmd[0]}")
        return handler(cmd)

    def _sbatch(self, cmd: list[str]) -> tuple[int, str, str]:
        script = cmd[1]
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.submit_delay:
                time.sleep(self.submit_delay)
            if any(name in script for name in self.fail_scripts):
                return 1, "", "sbatch: error: Batch job submission failed"
            with self._lock:
                if self.job_ids:
                    job_id = self.job_ids.pop(0)
                else:
                    job_id = str(self._next_id)
                    self._next_id += 1
                self.submitted.append(script)
            return 0, f"Submitted batch job {job_id}\n", ""
        finally:
            with self._lock:
                self.in_flight -= 1

    def _matching(self, rows: dict, job_id: str) -> list[str]:
        return [u for u in rows if u == job_id or u.startswith(f"{job_id}_")]

    def _sacct(self, cmd: list[str]) -> tuple[int, str, str]:
        if not self.sacct_available:
            return 1, "", "sacct: error: Slurm accounting storage is disabled"
        ids = cmd[cmd.index("-j") + 1].split(",")
        lines = []
        for job_id in ids:
            for unit_id in self._matching(self.sacct_rows, job_id):
                state, exit_code, elapsed = self.sacct_rows[unit_id]
                lines.append(f"{unit_id}|{state}|{exit_code}|{elapsed}")
                lines.append(f"{unit_id}.batch|{state}|{exit_code}|{elapsed}")
        return 0, "\n".join(lines) + ("\n" if lines else ""), ""

    def _squeue(self, cmd: list[str]) -> tuple[int, str, str]:
        if not self.squeue_available:
            return 1, "", "squeue: error: slurm_load_jobs error: Socket timed out"
        job_id = cmd[cmd.index("-j") + 1]
        units = self._matching(self.squeue_rows, job_id)
        if not units and not self._matching(self.sacct_rows, job_id):
            return 1, "", "slurm_load_jobs error: Invalid job id specified"
        out = "".join(f"{u} {self.squeue_rows[u]}\n" for u in units)
        return 0, out, ""

    def _scancel(self, cmd: list[str]) -> tuple[int, str, str]:
        self.cancelled.append(cmd[1])
        return 0, "", ""


class FakeClock:
    """Clock whose sleeps advance virtual time and run a hook."""

    def __init__(self, on_sleep=None) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.on_sleep = on_sleep

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float, interrupt: threading.Event | None = None) -> None:
        self.now += seconds
        self.sleeps.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep()


@pytest.fixture
def fake_slurm() -> FakeSlurm:
    return FakeSlurm()


@pytest.fixture
def client(fake_slurm: FakeSlurm) -> SlurmClient:
    return SlurmClient(runner=fake_slurm)


@pytest.fixture
def fake_clock(fake_slurm: FakeSlurm) -> FakeClock:
    return FakeClock(on_sleep=fake_slurm.advance)


@pytest.fixture
def ticker(fake_clock: FakeClock) -> Ticker:
    return Ticker(interval=30.0, clock=fake_clock)


@pytest.fixture
def context(tmp_path: Path) -> RunContext:
    return RunContext.create(run_base=tmp_path / "runs", run_id="run1", python="python3")


@pytest.fixture
def generator(context: RunContext) -> DescriptorGenerator:
    return DescriptorGenerator(
        ResourceSpec(partition="normal", time_limit="02:00:00", cpus=2, mem_per_cpu="2G"),
        context,
    )
