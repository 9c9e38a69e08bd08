"""
Slurm command layer.

Provides:
- run_cmd: Run a command with a timeout, never raising
- parse_job_id: Extract the job id from sbatch output
- expand_array_ids: Expand bracketed array ranges ("123_[1-3%2]")
- UnitInfo: One unit's state as reported by a backend
- SlurmClient: sbatch / sacct / squeue / scancel wrapper

Query conventions:
- sacct is the historical backend: authoritative for terminal states and
  still answers after a unit has left the queue
- squeue is the live backend: covers units sacct has not caught up with
- Both return None when the command itself failed, and an empty dict when
  it ran but knew nothing about the ids
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from batchflow.errors import SubmissionError
from batchflow.state import UnitState

logger = logging.getLogger(__name__)

# (cmd, timeout) -> (exit_code, stdout, stderr)
CommandRunner = Callable[[list[str], float], tuple[int, str, str]]

_SUBMITTED_RE = re.compile(r"Submitted batch job (\d+)")
_PARSABLE_RE = re.compile(r"^(\d+)(?:;\S+)?$")
_ARRAY_RANGE_RE = re.compile(r"^(\d+)_\[([^\]]+)\]$")


# ---------------------------------------------------------------------------
# Command utilities
# ---------------------------------------------------------------------------


def run_cmd(cmd: list[str], timeout: float = 30.0) -> tuple[int, str, str]:
    """
    Run a command with timeout.

    Args:
        cmd: Command and arguments as list.
        timeout: Timeout in seconds.

    Returns:
        Tuple of (exit_code, stdout, stderr). Launch failures and timeouts
        are reported as exit code -1 with the reason in stderr.
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, "", f"Command timed out after {timeout}s"
    except OSError as e:
        return -1, "", str(e)


def parse_job_id(output: str) -> str | None:
    """
    Parse job ID from sbatch output.

    Expected format: "Submitted batch job 12345". The ``--parsable`` form
    ("12345" or "12345;cluster") is accepted too.
    """
    match = _SUBMITTED_RE.search(output)
    if match:
        return match.group(1)
    for line in output.strip().splitlines():
        match = _PARSABLE_RE.match(line.strip())
        if match:
            return match.group(1)
    return None


def is_step_job(job_id: str) -> bool:
    """Check if job ID is a step (e.g., 12345.batch, 12345_3.extern)."""
    return "." in job_id


def expand_array_ids(job_id: str) -> list[str]:
    """
    Expand a bracketed array id into individual unit ids.

    Pending array tasks are reported as one row such as ``123_[4-6%2]`` or
    ``123_[1,3,5-6]``. Ids without brackets are returned unchanged.

    Example:
        >>> expand_array_ids("123_[1,3-4%2]")
        ['123_1', '123_3', '123_4']
    """
    match = _ARRAY_RANGE_RE.match(job_id)
    if not match:
        return [job_id]
    parent, spec = match.groups()
    spec = spec.split("%", 1)[0]
    ids: list[str] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        part = part.split(":", 1)[0]
        if "-" in part:
            start, end = part.split("-", 1)
            ids.extend(f"{parent}_{i}" for i in range(int(start), int(end) + 1))
        else:
            ids.append(f"{parent}_{int(part)}")
    return ids


# ---------------------------------------------------------------------------
# SlurmClient
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnitInfo:
    """
    One unit's state as reported by a query backend.

    Attributes:
        unit_id: Scheduler id of the unit (``123`` or ``123_4``).
        state: Normalized state.
        exit_code: sacct ExitCode field ("0:0"), if known.
        elapsed: sacct Elapsed field ("00:12:03"), if known.
        source: Backend that answered ("sacct", "squeue" or "none").
    """

    unit_id: str
    state: UnitState
    exit_code: str | None = None
    elapsed: str | None = None
    source: str = "sacct"


class SlurmClient:
    """
    Thin wrapper around the Slurm command line tools.

    All commands go through an injectable runner so tests can script the
    scheduler's answers without a cluster.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        submit_timeout: float = 60.0,
        query_timeout: float = 60.0,
    ) -> None:
        """
        Args:
            runner: Command runner, defaults to run_cmd.
            submit_timeout: Timeout for sbatch in seconds.
            query_timeout: Timeout for sacct/squeue/scancel in seconds.
        """
        self._run = runner or run_cmd
        self._submit_timeout = submit_timeout
        self._query_timeout = query_timeout

    def submit(self, script_path: Path | str, args: Iterable[str] = ()) -> str:
        """
        Submit a script via sbatch and return the job ID.

        Args:
            script_path: Rendered sbatch script.
            args: Extra arguments passed to the script itself.

        Raises:
            SubmissionError: If sbatch fails or its output has no job id.
        """
        cmd = ["sbatch", str(script_path), *args]
        exit_code, stdout, stderr = self._run(cmd, self._submit_timeout)

        if exit_code != 0:
            raise SubmissionError(
                f"sbatch failed with exit code {exit_code}:\n{stderr.strip()}"
            )

        job_id = parse_job_id(stdout)
        if not job_id:
            raise SubmissionError(f"Failed to parse job ID from sbatch output:\n{stdout}")
        return job_id

    def sacct(self, job_ids: Iterable[str]) -> dict[str, UnitInfo] | None:
        """
        Query sacct for the recorded state of one or more jobs.

        Array parents are expanded by sacct itself; bracketed pending ranges
        are expanded here. Step rows (``.batch``, ``.extern``) are skipped.

        Returns:
            Mapping unit id -> UnitInfo, or None if sacct failed.
        """
        job_ids = list(job_ids)
        if not job_ids:
            return {}

        exit_code, stdout, stderr = self._run(
            [
                "sacct",
                "-n",
                "-P",
                "-X",
                "-j",
                ",".join(job_ids),
                "--format=JobID,State,ExitCode,Elapsed",
            ],
            self._query_timeout,
        )
        if exit_code != 0:
            logger.debug(f"sacct failed: {stderr.strip()}")
            return None

        units: dict[str, UnitInfo] = {}
        for line in stdout.strip().split("\n"):
            if not line.strip():
                continue
            parts = line.split("|")
            if len(parts) < 2:
                continue
            raw_id, raw_state = parts[0].strip(), parts[1]
            if is_step_job(raw_id):
                continue
            state = UnitState.parse(raw_state)
            exit_code_field = parts[2].strip() if len(parts) > 2 else None
            elapsed = parts[3].strip() if len(parts) > 3 else None
            for unit_id in expand_array_ids(raw_id):
                units[unit_id] = UnitInfo(
                    unit_id=unit_id,
                    state=state,
                    exit_code=exit_code_field or None,
                    elapsed=elapsed or None,
                    source="sacct",
                )
        return units

    def squeue(self, job_id: str) -> dict[str, UnitState] | None:
        """
        Query squeue for the live state of a job.

        Uses ``-r`` so each array task gets its own row.

        Returns:
            Mapping unit id -> state (empty once the job left the queue),
            or None if squeue failed.
        """
        exit_code, stdout, stderr = self._run(
            ["squeue", "-h", "-r", "-j", job_id, "-o", "%i %T"],
            self._query_timeout,
        )
        if exit_code != 0:
            # squeue exits non-zero for ids it no longer knows about
            if "Invalid job id" in stderr:
                return {}
            logger.debug(f"squeue failed: {stderr.strip()}")
            return None

        states: dict[str, UnitState] = {}
        for line in stdout.strip().split("\n"):
            parts = line.split()
            if len(parts) < 2 or is_step_job(parts[0]):
                continue
            for unit_id in expand_array_ids(parts[0]):
                states[unit_id] = UnitState.parse(parts[1])
        return states

    def cancel(self, job_ids: Iterable[str]) -> list[str]:
        """
        Cancel jobs via scancel.

        Returns:
            Ids that could not be cancelled.
        """
        failed: list[str] = []
        for job_id in job_ids:
            exit_code, _, stderr = self._run(["scancel", job_id], self._query_timeout)
            if exit_code != 0:
                logger.warning(f"Failed to cancel job {job_id}: {stderr.strip()}")
                failed.append(job_id)
            else:
                logger.info(f"Cancelled job {job_id}")
        return failed
