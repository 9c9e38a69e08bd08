"""
batchflow CLI: Command-line interface for submitting and monitoring runs.

Provides commands for:
- submit: Submit a task list to Slurm with a chosen strategy
- monitor: Track a submitted run (or existing job ids) to completion
- submit-and-monitor: Both, in one process

Exit codes:
- 0: every unit completed successfully (or submission succeeded)
- 1: the run failed (failed units, submission error, poll budget exhausted)
- 2: configuration error (nothing was submitted)
- 130: interrupted
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import logging
import os
import sys
from pathlib import Path
from typing import Any

from batchflow.config import ResolvedConfig, deep_merge, resolve_config
from batchflow.descriptor import DescriptorGenerator
from batchflow.errors import (
    BatchflowError,
    ConfigurationError,
    MonitoringCancelled,
    MonitoringTimeout,
)
from batchflow.monitor import MonitorResult
from batchflow.poller import POLL_INTERVAL_SECONDS, Ticker
from batchflow.progress import create_progress_tracker, display_result
from batchflow.runner import CancelPolicy, Runner, load_record
from batchflow.strategy import StrategyOptions, StrategyRegistry
from batchflow.types import REGISTRY_FILENAME, RunContext, TaskList

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    common.add_argument(
        "--log-file",
        help="Also write log records to this file",
    )
    common.add_argument(
        "--progress",
        choices=["auto", "rich", "simple", "none"],
        default="auto",
        help="Progress display while monitoring (default: auto)",
    )
    common.add_argument(
        "--cancel-on-error",
        action="store_true",
        help="scancel already-submitted jobs if the controller fails",
    )
    common.add_argument(
        "--profile",
        help="Profile from .batchflow.toml (default: [project].default_profile)",
    )
    return common


def _submit_parser() -> argparse.ArgumentParser:
    submit = argparse.ArgumentParser(add_help=False)
    submit.add_argument(
        "--tasks",
        default=os.environ.get("TASKS"),
        help="Comma-separated task names (default: $TASKS)",
    )
    submit.add_argument(
        "--tasks-file",
        help="File with one task name per line",
    )
    submit.add_argument(
        "--strategy",
        help=f"Submission strategy (default: array). Available: {', '.join(StrategyRegistry.types())}",
    )
    submit.add_argument(
        "--max-concurrent",
        type=int,
        help="Max units running at once (array) or submitting at once (parallel)",
    )
    submit.add_argument("--partition", help="Slurm partition")
    submit.add_argument("--time", dest="time_limit", help="Walltime limit, e.g. 04:00:00")
    submit.add_argument("--cpus", type=int, help="CPUs per task")
    submit.add_argument("--mem-per-cpu", help="Memory per CPU, e.g. 4G")
    submit.add_argument("--account", help="Slurm account to charge")
    submit.add_argument("--java-module", help="Environment module loaded before the engine")
    submit.add_argument("--pipeline", help="Pipeline passed to the workflow engine")
    submit.add_argument("--run-base", help="Parent of run directories (default: runs)")
    submit.add_argument("--work-base", help="Parent of per-task work directories")
    submit.add_argument("--output-base", help="Parent of per-task output directories")
    submit.add_argument(
        "--python",
        help="Interpreter that runs the task runner on compute nodes",
    )
    submit.add_argument(
        "--block",
        action="store_true",
        help="Sequential strategy: wait for each unit before submitting the next",
    )
    submit.add_argument(
        "--dry-run",
        action="store_true",
        help="Write scripts, task list and run spec without calling sbatch",
    )
    return submit


def _poll_parser() -> argparse.ArgumentParser:
    poll = argparse.ArgumentParser(add_help=False)
    poll.add_argument(
        "--max-cycles",
        type=int,
        help="Give up after this many poll cycles",
    )
    poll.add_argument(
        "--interval",
        type=float,
        default=POLL_INTERVAL_SECONDS,
        help=f"Seconds between poll cycles (default: {POLL_INTERVAL_SECONDS:.0f})",
    )
    return poll


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="batchflow",
        description="batchflow: submit task lists to Slurm and monitor them",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    common = _common_parser()
    submit_opts = _submit_parser()
    poll_opts = _poll_parser()

    submit_parser = subparsers.add_parser(
        "submit",
        parents=[common, submit_opts, poll_opts],
        help="Submit tasks",
    )
    submit_parser.add_argument(
        "--auto-monitor",
        action="store_true",
        help="Monitor the run after submitting",
    )

    monitor_parser = subparsers.add_parser(
        "monitor",
        parents=[common, poll_opts],
        help="Monitor a submitted run",
    )
    monitor_parser.add_argument(
        "--registry",
        help="Job registry file written at submission",
    )
    monitor_parser.add_argument(
        "--job-id",
        default=os.environ.get("EXISTING_JOB_ID"),
        help="Existing job id(s): one array id, or comma-separated job ids "
        "(default: $EXISTING_JOB_ID)",
    )
    monitor_parser.add_argument(
        "--run-dir",
        help="Run directory of the existing job(s), if known",
    )
    monitor_parser.add_argument(
        "--array-size",
        type=int,
        help="Number of tasks in the array (default: from the run's task list)",
    )

    subparsers.add_parser(
        "submit-and-monitor",
        parents=[common, submit_opts, poll_opts],
        help="Submit tasks and monitor them to completion",
    )
    return parser


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure root logging for the CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(level=level, format=fmt)
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(fmt))
        logging.getLogger().addHandler(handler)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    setup_logging(args.verbose, args.log_file)

    try:
        if args.command == "monitor":
            return handle_monitor(args)
        auto_monitor = args.command == "submit-and-monitor" or args.auto_monitor
        return handle_submit(args, monitor=auto_monitor)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except (MonitoringTimeout, MonitoringCancelled) as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except BatchflowError as e:
        logger.error(f"Run failed: {e}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _make_runner(args: argparse.Namespace) -> Runner:
    return Runner(
        cancel_policy=CancelPolicy.ON_ERROR if args.cancel_on_error else CancelPolicy.NEVER,
        ticker=Ticker(interval=args.interval),
        max_cycles=args.max_cycles,
    )


def _read_tasks(args: argparse.Namespace) -> TaskList:
    if args.tasks_file:
        path = Path(args.tasks_file)
        if not path.is_file():
            raise ConfigurationError(f"Task list file not found: {path}")
        tasks = TaskList.read(path)
    elif args.tasks:
        tasks = TaskList.parse(args.tasks)
    else:
        raise ConfigurationError("No tasks given (use --tasks, --tasks-file or $TASKS)")
    if not len(tasks):
        raise ConfigurationError("Task list is empty")
    return tasks


def _with_flags(config: ResolvedConfig, args: argparse.Namespace) -> ResolvedConfig:
    """Resolved config with command line flags layered on top."""
    flags = {
        "partition": args.partition,
        "time_limit": args.time_limit,
        "cpus": args.cpus,
        "mem_per_cpu": args.mem_per_cpu,
        "account": args.account,
        "java_module": args.java_module,
        "strategy": args.strategy,
        "max_concurrent": args.max_concurrent,
        "run_base": args.run_base,
        "work_base": args.work_base,
        "output_base": args.output_base,
        "python": args.python,
    }
    overrides: dict[str, Any] = {k: v for k, v in flags.items() if v is not None}
    if args.pipeline:
        overrides["engine"] = {"pipeline": args.pipeline}
    return dataclasses.replace(config, settings=deep_merge(config.settings, overrides))


def _run_monitor(
    runner: Runner,
    args: argparse.Namespace,
    title: str,
    total: int,
    **monitor_kwargs: Any,
) -> MonitorResult:
    tracker = create_progress_tracker(total=total, title=title, style=args.progress)
    runner.set_event_callback(tracker)
    with tracker if tracker is not None else contextlib.nullcontext():
        result = runner.monitor(**monitor_kwargs)
    display_result(result)
    return result


def handle_submit(args: argparse.Namespace, monitor: bool = False) -> int:
    """Handle submit and submit-and-monitor."""
    config = _with_flags(resolve_config(args.profile), args)
    tasks = _read_tasks(args)

    context = RunContext.create(
        run_base=config.get("run_base", "runs"),
        work_base=config.get("work_base"),
        output_base=config.get("output_base"),
        python=config.get("python", sys.executable),
    )
    generator = DescriptorGenerator(
        resources=config.resources,
        context=context,
        engine=config.engine,
        job_prefix=config.project.name or "batchflow",
    )
    options = StrategyOptions(
        max_concurrent=config.max_concurrent,
        block=args.block,
        max_cycles=args.max_cycles,
    )
    strategy = config.strategy or "array"
    runner = _make_runner(args)

    submitted = runner.submit(tasks, generator, strategy, options, dry_run=args.dry_run)
    if submitted.dry_run:
        print(f"Dry run: {len(tasks)} task(s), run directory {context.run_dir}")
        for script in submitted.scripts:
            print(f"  {script}")
        return EXIT_OK

    print(f"Submitted run {context.run_id}: {submitted.record.encode()}")
    print(f"  Registry: {context.registry_path}")
    if not monitor:
        return EXIT_OK

    result = _run_monitor(
        runner,
        args,
        title=config.project.name or context.run_id,
        total=len(tasks),
        record=submitted.record,
        tasks=tasks,
        handles=submitted.handles,
    )
    return EXIT_OK if result.success else EXIT_FAILURE


def handle_monitor(args: argparse.Namespace) -> int:
    """Handle monitor."""
    registry = args.registry
    if registry is None and not args.job_id and args.run_dir:
        registry = str(Path(args.run_dir) / REGISTRY_FILENAME)
    record = load_record(registry=registry, job_ids=args.job_id, run_dir=args.run_dir)

    runner = _make_runner(args)
    result = _run_monitor(
        runner,
        args,
        title=f"{record.kind.value} {','.join(record.ids)}",
        total=args.array_size or 0,
        record=record,
        array_size=args.array_size,
    )
    return EXIT_OK if result.success else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
