"""
Descriptor generation: from tasks and resources to sbatch scripts.

Provides:
- ArrayRange: Slurm ``--array`` range with an optional concurrency cap
- array_range: Compute the range for a task count and cap
- StaticName / IndexResolved: How a unit learns its task name
- SubmissionDescriptor: One schedulable unit description
- DescriptorGenerator: Builds descriptors, renders and writes scripts

Every generated script runs the same task runner
(``python -m batchflow.worker``). Individual submissions pass the task name
as an argument; array submissions let the runner read line
``SLURM_ARRAY_TASK_ID`` of the persisted task list.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from batchflow.types import (
    EngineSpec,
    ResourceSpec,
    RunContext,
    SubmissionKind,
    TaskList,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Array ranges
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArrayRange:
    """
    A 1-based Slurm array range.

    Attributes:
        start: First index.
        end: Last index (inclusive).
        max_concurrency: Cap on simultaneously running tasks, or None.
    """

    start: int
    end: int
    max_concurrency: int | None = None

    @property
    def count(self) -> int:
        """Number of array tasks."""
        return self.end - self.start + 1

    def __str__(self) -> str:
        s = f"{self.start}-{self.end}"
        if self.max_concurrency:
            s += f"%{self.max_concurrency}"
        return s


def array_range(task_count: int, max_concurrent: int | None = None) -> ArrayRange | None:
    """
    Compute the array range for a run.

    The cap is clamped to the task count. A single task needs no array at
    all, so None is returned and the unit is submitted as a plain job.

    Example:
        >>> str(array_range(3, 2))
        '1-3%2'
        >>> str(array_range(3, 10))
        '1-3%3'
        >>> array_range(1, 4) is None
        True
    """
    if task_count <= 1:
        return None
    cap = min(max_concurrent, task_count) if max_concurrent and max_concurrent > 0 else None
    return ArrayRange(start=1, end=task_count, max_concurrency=cap)


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StaticName:
    """The unit runs a task named up front."""

    name: str


@dataclass(frozen=True)
class IndexResolved:
    """The unit resolves its task from the array index at run time."""


TaskBinding = Union[StaticName, IndexResolved]


@dataclass(frozen=True)
class SubmissionDescriptor:
    """
    Description of one sbatch submission.

    An ARRAY descriptor is submitted once and covers all tasks; an
    INDIVIDUAL descriptor is submitted once per task.

    Attributes:
        mode: ARRAY or INDIVIDUAL.
        task_binding: StaticName or IndexResolved.
        job_name: Slurm job name.
        array_range: Range for ARRAY mode (None for a single-task array).
    """

    mode: SubmissionKind
    task_binding: TaskBinding
    job_name: str
    array_range: ArrayRange | None = None

    @property
    def unit_count(self) -> int:
        """Number of scheduler units this descriptor produces."""
        return self.array_range.count if self.array_range else 1


def _safe_name(value: str) -> str:
    """Make a string usable in job and file names."""
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value)


def _task_stem(name: str) -> str:
    """
    File stem for a task's script.

    Distinct names can sanitize alike (``"a b"`` and ``"a_b"``), so a short
    digest of the raw name keeps every task's script apart.
    """
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"task_{_safe_name(name)}_{digest}"


def _directive_path(path: Path) -> str:
    """Format a path for an ``#SBATCH`` line, quoting it when it has whitespace."""
    text = str(path)
    if any(ch.isspace() for ch in text):
        return f'"{text}"'
    return text


class DescriptorGenerator:
    """
    Builds submission descriptors and renders them as sbatch scripts.

    Shared by every submission strategy so all of them produce the same
    directives and the same runner body.
    """

    def __init__(
        self,
        resources: ResourceSpec,
        context: RunContext,
        engine: EngineSpec | None = None,
        job_prefix: str = "batchflow",
    ) -> None:
        """
        Args:
            resources: Resource request for every unit.
            context: Run directories.
            engine: Engine invocation written to the run spec.
            job_prefix: Prefix for Slurm job names.
        """
        self.resources = resources
        self.context = context
        self.engine = engine or EngineSpec()
        self.job_prefix = job_prefix

    # -- descriptors ---------------------------------------------------------

    def array_descriptor(
        self, tasks: TaskList, max_concurrent: int | None = None
    ) -> SubmissionDescriptor:
        """
        Build the single descriptor covering all tasks.

        With one task the array directive is dropped and the task is bound
        by name, since there is no index to resolve.
        """
        rng = array_range(len(tasks), max_concurrent)
        if rng is None and len(tasks) == 1:
            binding: TaskBinding = StaticName(tasks.names[0])
        else:
            binding = IndexResolved()
        return SubmissionDescriptor(
            mode=SubmissionKind.ARRAY,
            task_binding=binding,
            job_name=f"{self.job_prefix}-{self.context.run_id}",
            array_range=rng,
        )

    def individual_descriptor(self, task: str) -> SubmissionDescriptor:
        """Build the descriptor for one task."""
        return SubmissionDescriptor(
            mode=SubmissionKind.INDIVIDUAL,
            task_binding=StaticName(task),
            job_name=f"{self.job_prefix}-{_safe_name(task)}",
        )

    # -- rendering -----------------------------------------------------------

    def render(self, descriptor: SubmissionDescriptor) -> str:
        """
        Generate sbatch script content.

        Args:
            descriptor: The unit to render.

        Returns:
            Complete sbatch script as string.
        """
        res = self.resources
        logs_dir = self.context.logs_dir
        log_stem = "%A_%a" if descriptor.array_range is not None else "%x_%j"
        lines = ["#!/bin/bash"]

        # SBATCH directives
        lines.append(f"#SBATCH --job-name={descriptor.job_name}")
        lines.append(f"#SBATCH --partition={res.partition}")
        lines.append(f"#SBATCH --time={res.time_limit}")
        lines.append(f"#SBATCH --cpus-per-task={res.cpus}")
        lines.append(f"#SBATCH --mem-per-cpu={res.mem_per_cpu}")
        if res.account:
            lines.append(f"#SBATCH --account={res.account}")
        if descriptor.array_range is not None:
            lines.append(f"#SBATCH --array={descriptor.array_range}")
        lines.append(f"#SBATCH --output={_directive_path(logs_dir / f'{log_stem}.out')}")
        lines.append(f"#SBATCH --error={_directive_path(logs_dir / f'{log_stem}.err')}")
        # A failed unit is final; the scheduler must not rerun it
        lines.append("#SBATCH --no-requeue")

        for key, value in res.extra_sbatch.items():
            # Convert underscores to hyphens for SLURM compatibility
            slurm_key = key.replace("_", "-")
            lines.append(f"#SBATCH --{slurm_key}={value}")

        lines.append("")

        if res.java_module:
            lines.append(f"module load {res.java_module}")
        for cmd in res.setup:
            lines.append(cmd)
        if res.java_module or res.setup:
            lines.append("")

        runner = [
            self.context.python,
            "-m",
            "batchflow.worker",
            "--spec",
            str(self.context.run_spec_path),
        ]
        if isinstance(descriptor.task_binding, StaticName):
            runner += ["--task", descriptor.task_binding.name]

        lines.append("# Run the batchflow task runner; its exit status is the unit's")
        lines.append(" ".join(shlex.quote(part) for part in runner))
        lines.append("exit $?")
        lines.append("")

        return "\n".join(lines)

    def script_path(self, descriptor: SubmissionDescriptor) -> Path:
        """Return the filesystem location for the rendered script."""
        if isinstance(descriptor.task_binding, StaticName) and (
            descriptor.mode is SubmissionKind.INDIVIDUAL
        ):
            stem = _task_stem(descriptor.task_binding.name)
        else:
            stem = "array"
        return self.context.scripts_dir / f"{stem}.sbatch"

    def write_script(self, descriptor: SubmissionDescriptor) -> Path:
        """Render a descriptor to its script file and return the path."""
        path = self.script_path(descriptor)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.context.logs_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(descriptor))
        path.chmod(0o755)
        logger.debug(f"Wrote sbatch script {path}")
        return path

    # -- run artifacts -------------------------------------------------------

    def write_run_spec(self, tasks: TaskList) -> Path:
        """
        Write the task list artifact and the run spec the worker reads.

        Args:
            tasks: The run's tasks.

        Returns:
            Path to the run spec file.
        """
        ctx = self.context
        tasks.write(ctx.task_list_path)

        spec = {
            "run_id": ctx.run_id,
            "task_list": str(ctx.task_list_path),
            "task_count": len(tasks),
            "work_base": str(ctx.work_base),
            "output_base": str(ctx.output_base),
            "engine": self.engine.to_dict(),
        }
        ctx.run_spec_path.parent.mkdir(parents=True, exist_ok=True)
        with open(ctx.run_spec_path, "w") as f:
            json.dump(spec, f, indent=2)
        return ctx.run_spec_path
