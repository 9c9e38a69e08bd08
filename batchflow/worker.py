#!/usr/bin/env python
"""
Task runner: entrypoint for every batchflow unit.

This module is invoked by generated sbatch scripts via:
    python -m batchflow.worker --spec <run_dir>/run_spec.json [--task NAME]

Each unit:
1. Reads the run spec written at submission time
2. Resolves its task name from --task, or from line SLURM_ARRAY_TASK_ID
   of the task list
3. Creates the task's working and output directories
4. Runs the workflow engine with report, trace and timeline flags
5. Exits with the engine's exit code

Exit codes:
- engine exit code on a normal run
- 3 when the task name cannot be resolved (fatal for this unit only)
- 127 when the engine executable cannot be found
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Mapping

from batchflow.errors import TaskResolutionError
from batchflow.types import EngineSpec, TaskList

logger = logging.getLogger(__name__)

EXIT_TASK_RESOLUTION = 3
EXIT_ENGINE_NOT_FOUND = 127


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the task runner.

    Returns:
        Exit code (the engine's, or one of the runner's own codes).
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="batchflow task runner",
    )
    parser.add_argument(
        "--spec",
        required=True,
        help="Path to the run spec JSON file",
    )
    parser.add_argument(
        "--task",
        default=None,
        help="Task name (omit to resolve from SLURM_ARRAY_TASK_ID)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    spec = load_run_spec(Path(args.spec))
    try:
        task = resolve_task(spec, args.task, os.environ)
    except TaskResolutionError as e:
        logger.error(f"Cannot resolve task: {e}")
        return EXIT_TASK_RESOLUTION

    return run_task(spec, task)


def load_run_spec(path: Path) -> dict[str, Any]:
    """Read the run spec written by DescriptorGenerator.write_run_spec."""
    with open(path) as f:
        return json.load(f)


def resolve_task(
    spec: dict[str, Any],
    task: str | None,
    environ: Mapping[str, str],
) -> str:
    """
    Determine which task this unit runs.

    Args:
        spec: Parsed run spec.
        task: Explicit task name from the command line, if any.
        environ: Environment to read SLURM_ARRAY_TASK_ID from.

    Returns:
        The task name.

    Raises:
        TaskResolutionError: If no index is set, it is not an integer, or the
            task list has no line for it.
    """
    if task:
        return task

    raw_index = environ.get("SLURM_ARRAY_TASK_ID")
    if raw_index is None:
        raise TaskResolutionError(
            "No --task given and SLURM_ARRAY_TASK_ID is not set"
        )
    try:
        index = int(raw_index)
    except ValueError:
        raise TaskResolutionError(
            f"SLURM_ARRAY_TASK_ID is not an integer: {raw_index!r}"
        ) from None

    task_list_path = Path(spec["task_list"])
    if not task_list_path.exists():
        raise TaskResolutionError(f"Task list not found: {task_list_path}")
    return TaskList.read(task_list_path).name_at(index)


def task_dir(base: str | Path, task: str) -> Path:
    """
    Return the directory for a task directly under base.

    Raises:
        TaskResolutionError: If the task name would place it anywhere else.
    """
    root = Path(base).resolve()
    if (root / task).resolve().parent != root:
        raise TaskResolutionError(f"Task {task!r} does not name a directory under {root}")
    return Path(base) / task


def run_task(spec: dict[str, Any], task: str) -> int:
    """
    Run the workflow engine for one task.

    Args:
        spec: Parsed run spec.
        task: Task name.

    Returns:
        The engine's exit code, or EXIT_TASK_RESOLUTION when the task name
        would place its directories outside the work or output base.
    """
    try:
        workdir = task_dir(spec["work_base"], task)
        outdir = task_dir(spec["output_base"], task)
    except TaskResolutionError as e:
        logger.error(f"Cannot resolve task: {e}")
        return EXIT_TASK_RESOLUTION
    workdir.mkdir(parents=True, exist_ok=True)
    outdir.mkdir(parents=True, exist_ok=True)

    engine = EngineSpec.from_dict(spec.get("engine", {}))
    cmd = engine.render_command(task, workdir=workdir, outdir=outdir)

    job_id = os.environ.get("SLURM_JOB_ID", "local")
    logger.info(f"Running task {task!r} (job {job_id}) in {workdir}")
    logger.info("Command: %s", " ".join(cmd))

    try:
        result = subprocess.run(cmd, cwd=workdir)
    except FileNotFoundError:
        logger.error(f"Engine executable not found: {cmd[0]}")
        return EXIT_ENGINE_NOT_FOUND

    if result.returncode == 0:
        logger.info(f"Task {task!r} finished successfully")
    else:
        logger.error(f"Task {task!r} failed with exit code {result.returncode}")
    return result.returncode


if __name__ == "__main__":
    sys.exit(main())
