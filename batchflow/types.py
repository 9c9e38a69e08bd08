"""
Core types for batchflow (PUBLIC).

This module defines the data structures shared by every stage of a run:
- TaskList: Ordered, de-duplicated task names
- ResourceSpec: Slurm resource request for every unit of a run
- EngineSpec: How the wrapped workflow engine is invoked for one task
- RunContext: Run id and directories, resolved once at startup
- SubmissionKind: ARRAY or INDIVIDUAL
- JobHandle: A scheduler id returned by a successful submission
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from batchflow.errors import ConfigurationError, TaskResolutionError

TASK_LIST_FILENAME = "tasks.txt"
RUN_SPEC_FILENAME = "run_spec.json"
REGISTRY_FILENAME = "job_registry.txt"


class SubmissionKind(str, Enum):
    """How a run's tasks map onto scheduler jobs."""

    ARRAY = "ARRAY"
    INDIVIDUAL = "INDIVIDUAL"


# ---------------------------------------------------------------------------
# Task list
# ---------------------------------------------------------------------------


def validate_task_name(name: str) -> str:
    """
    Check that a task name can serve as one directory component.

    Each task gets <work_base>/<name> and <output_base>/<name>, so a name
    must not contain a path separator or be ``.`` or ``..``.

    Raises:
        ConfigurationError: If the name is unusable.
    """
    if not name or "\n" in name:
        raise ConfigurationError(f"Invalid task name: {name!r}")
    if name in (".", "..") or "/" in name or "\\" in name:
        raise ConfigurationError(
            f"Invalid task name: {name!r} (must be a single path component)"
        )
    return name


@dataclass(frozen=True)
class TaskList:
    """
    Ordered set of unique task names.

    Order matters: array index i (1-based) runs names[i - 1].

    Attributes:
        names: Task names, unique, in first-seen order.
    """

    names: tuple[str, ...]

    def __post_init__(self) -> None:
        if len(set(self.names)) != len(self.names):
            raise ConfigurationError(f"Duplicate task names in {list(self.names)}")
        for name in self.names:
            validate_task_name(name)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> TaskList:
        """Build a task list, trimming whitespace and collapsing duplicates."""
        seen: dict[str, None] = {}
        for name in names:
            name = name.strip()
            if name:
                seen.setdefault(name, None)
        return cls(tuple(seen))

    @classmethod
    def parse(cls, raw: str) -> TaskList:
        """
        Parse comma-separated user input.

        Example:
            >>> TaskList.parse("s1, s2,,s1,s3").names
            ('s1', 's2', 's3')
        """
        return cls.from_names(raw.split(","))

    @classmethod
    def read(cls, path: Path) -> TaskList:
        """Read a newline-delimited task list artifact."""
        return cls.from_names(Path(path).read_text().splitlines())

    def write(self, path: Path) -> Path:
        """Write the task list as one name per line."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(f"{name}\n" for name in self.names))
        return path

    def name_at(self, index: int) -> str:
        """
        Return the task at a 1-based array index.

        Raises:
            TaskResolutionError: If no task exists at that index.
        """
        if index < 1 or index > len(self.names):
            raise TaskResolutionError(
                f"No task at index {index} (task list has {len(self.names)} entries)"
            )
        return self.names[index - 1]

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self):
        return iter(self.names)


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceSpec:
    """
    Resource request applied to every unit of a run.

    Attributes:
        time_limit: Maximum walltime (e.g., "04:00:00").
        cpus: CPUs per task.
        mem_per_cpu: Memory per CPU (e.g., "4G").
        partition: Slurm partition name.
        account: Optional account to charge.
        java_module: Optional environment module loaded before the engine runs.
        setup: Extra shell commands run before the engine.
        extra_sbatch: Additional sbatch directives as key-value pairs.
    """

    time_limit: str = "01:00:00"
    cpus: int = 1
    mem_per_cpu: str = "4G"
    partition: str = "default"
    account: str | None = None
    java_module: str | None = None
    setup: tuple[str, ...] = ()
    extra_sbatch: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ResourceSpec:
        """
        Parse from a config dict, ignoring keys that are not resource fields.

        Handles ``setup`` given as a single string.
        """
        known = {
            "time_limit",
            "cpus",
            "mem_per_cpu",
            "partition",
            "account",
            "java_module",
        }
        kwargs: dict[str, Any] = {k: v for k, v in d.items() if k in known}
        if "cpus" in kwargs:
            kwargs["cpus"] = int(kwargs["cpus"])
        setup = d.get("setup", ())
        if isinstance(setup, str):
            setup = [setup]
        return cls(
            **kwargs,
            setup=tuple(setup),
            extra_sbatch=dict(d.get("extra_sbatch", {})),
        )


@dataclass(frozen=True)
class EngineSpec:
    """
    How the wrapped workflow engine is launched for one task.

    ``args`` may contain ``{task}``, ``{outdir}`` and ``{workdir}``
    placeholders, filled in per task by the worker.

    Attributes:
        command: Engine launcher (e.g., ["nextflow", "run"]).
        pipeline: Pipeline script or repository passed to the launcher.
        args: Extra arguments, templated per task.
        profile: Optional engine profile (passed as ``-profile``).
    """

    command: tuple[str, ...] = ("nextflow", "run")
    pipeline: str = "main.nf"
    args: tuple[str, ...] = ("--task", "{task}", "--outdir", "{outdir}")
    profile: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EngineSpec:
        """Parse from a config dict; string commands are split on whitespace."""
        kwargs: dict[str, Any] = {}
        if "command" in d:
            command = d["command"]
            kwargs["command"] = tuple(
                command.split() if isinstance(command, str) else command
            )
        if "pipeline" in d:
            kwargs["pipeline"] = str(d["pipeline"])
        if "args" in d:
            args = d["args"]
            kwargs["args"] = tuple(args.split() if isinstance(args, str) else args)
        if d.get("profile"):
            kwargs["profile"] = str(d["profile"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the run spec file."""
        return {
            "command": list(self.command),
            "pipeline": self.pipeline,
            "args": list(self.args),
            "profile": self.profile,
        }

    def render_command(self, task: str, workdir: Path, outdir: Path) -> list[str]:
        """
        Build the full engine command line for one task.

        The report, trace and timeline flags always point inside the task's
        working directory.
        """
        values = {"task": task, "workdir": str(workdir), "outdir": str(outdir)}
        cmd = [*self.command, self.pipeline]
        if self.profile:
            cmd += ["-profile", self.profile]
        cmd += [arg.format(**values) for arg in self.args]
        cmd += [
            "-with-report",
            str(workdir / "report.html"),
            "-with-trace",
            str(workdir / "trace.txt"),
            "-with-timeline",
            str(workdir / "timeline.html"),
        ]
        return cmd


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


def new_run_id() -> str:
    """Generate a sortable run id (timestamp plus a short random suffix)."""
    return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class RunContext:
    """
    Everything about a run that is decided once at startup.

    Built by the CLI (or a caller) and passed explicitly to every component.

    Attributes:
        run_id: Identifier of this run.
        run_dir: Directory holding the task list, scripts, logs and registry.
        work_base: Parent of per-task working directories.
        output_base: Parent of per-task output directories.
        python: Interpreter used on compute nodes to launch the worker.
    """

    run_id: str
    run_dir: Path
    work_base: Path
    output_base: Path
    python: str = "python"

    @classmethod
    def create(
        cls,
        run_base: Path | str = "runs",
        work_base: Path | str | None = None,
        output_base: Path | str | None = None,
        run_id: str | None = None,
        python: str = "python",
    ) -> RunContext:
        """
        Resolve a new run's directories.

        Args:
            run_base: Parent directory for run directories.
            work_base: Parent of task work dirs (default: <run_dir>/work).
            output_base: Parent of task output dirs (default: <run_dir>/output).
            run_id: Explicit run id (generated if omitted).
            python: Interpreter for the worker on compute nodes.
        """
        run_id = run_id or new_run_id()
        run_dir = Path(run_base).resolve() / run_id
        return cls(
            run_id=run_id,
            run_dir=run_dir,
            work_base=Path(work_base).resolve() if work_base else run_dir / "work",
            output_base=(
                Path(output_base).resolve() if output_base else run_dir / "output"
            ),
            python=python,
        )

    @property
    def task_list_path(self) -> Path:
        return self.run_dir / TASK_LIST_FILENAME

    @property
    def run_spec_path(self) -> Path:
        return self.run_dir / RUN_SPEC_FILENAME

    @property
    def registry_path(self) -> Path:
        return self.run_dir / REGISTRY_FILENAME

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / "logs"

    @property
    def scripts_dir(self) -> Path:
        return self.run_dir / "scripts"


@dataclass(frozen=True)
class JobHandle:
    """
    Result of one successful submission.

    For ARRAY handles, per-task units are addressed as ``<scheduler_id>_<index>``.

    Attributes:
        scheduler_id: Id parsed from sbatch output.
        kind: ARRAY or INDIVIDUAL.
        task: Task name for INDIVIDUAL handles.
    """

    scheduler_id: str
    kind: SubmissionKind
    task: str | None = None
