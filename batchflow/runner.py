"""
Runner: orchestration of submission and monitoring.

Provides:
- CancelPolicy: What happens to submitted work when the controller fails
- SubmitResult: What a submission produced
- Runner: submit / monitor / submit_and_monitor
- load_record: Registry file or explicit job ids -> JobRegistryRecord

Example:
    runner = Runner(cancel_policy=CancelPolicy.ON_ERROR)
    generator = DescriptorGenerator(resources, RunContext.create("runs"))
    result = runner.submit_and_monitor(TaskList.parse("s1,s2,s3"), generator)
    print(result.success)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Sequence

from batchflow.descriptor import DescriptorGenerator
from batchflow.errors import (
    ConfigurationError,
    MonitoringCancelled,
    MonitoringTimeout,
    SubmissionError,
    UnitTerminalFailure,
)
from batchflow.events import EventCallback
from batchflow.monitor import Monitor, MonitorResult, unit_task_names
from batchflow.poller import StatePoller, Ticker
from batchflow.registry import JobRegistryRecord
from batchflow.scheduler import SlurmClient
from batchflow.strategy import StrategyOptions, StrategyRegistry, SubmissionStrategy
from batchflow.types import TASK_LIST_FILENAME, JobHandle, RunContext, SubmissionKind, TaskList

logger = logging.getLogger(__name__)


class CancelPolicy(str, Enum):
    """
    What to do with already-submitted work when the controller fails.

    NEVER leaves it running. ON_ERROR cancels every known id on a
    submission error, a terminal failure while blocking, a monitoring
    timeout or cancellation, or an interrupt.
    """

    NEVER = "never"
    ON_ERROR = "on_error"


_FATAL = (
    SubmissionError,
    UnitTerminalFailure,
    MonitoringTimeout,
    MonitoringCancelled,
    KeyboardInterrupt,
)


@dataclass(frozen=True)
class SubmitResult:
    """
    Outcome of a submission.

    Attributes:
        context: The run's context.
        tasks: The submitted tasks.
        record: Registry record written (None for a dry run).
        handles: One handle per accepted sbatch call.
        scripts: Rendered scripts (dry run only).
    """

    context: RunContext
    tasks: TaskList
    record: JobRegistryRecord | None
    handles: Sequence[JobHandle] = field(default_factory=tuple)
    scripts: Sequence[Path] = field(default_factory=tuple)

    @property
    def dry_run(self) -> bool:
        return self.record is None


def load_record(
    registry: Path | str | None = None,
    job_ids: str | None = None,
    run_dir: Path | str | None = None,
) -> JobRegistryRecord:
    """
    Resolve what to monitor.

    Explicit job ids win over a registry file.

    Raises:
        ConfigurationError: If neither is given, or the registry is invalid.
    """
    if job_ids:
        record = JobRegistryRecord.from_existing_ids(job_ids, run_dir)
        logger.info(f"Monitoring existing job(s): {record.encode()}")
        return record
    if registry is None:
        raise ConfigurationError(
            "Nothing to monitor: give a job registry or existing job id(s)"
        )
    try:
        return JobRegistryRecord.read(registry)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e


def read_run_tasks(record: JobRegistryRecord) -> TaskList | None:
    """The run's task list, if its run directory is known and has one."""
    run_path = record.run_path
    if run_path is None:
        return None
    path = run_path / TASK_LIST_FILENAME
    if not path.is_file():
        logger.debug(f"No task list at {path}")
        return None
    return TaskList.read(path)


class Runner:
    """
    Drives submission and monitoring for one controlling process.

    The cancellation policy applies to every operation: with
    CancelPolicy.ON_ERROR, a fatal error cancels every scheduler id known
    at that point before the error propagates.
    """

    def __init__(
        self,
        client: SlurmClient | None = None,
        cancel_policy: CancelPolicy = CancelPolicy.NEVER,
        on_event: EventCallback | None = None,
        ticker: Ticker | None = None,
        max_cycles: int | None = None,
    ) -> None:
        """
        Args:
            client: Slurm command wrapper.
            cancel_policy: What to do with submitted work on fatal errors.
            on_event: Optional event callback (progress trackers).
            ticker: Wait between poll cycles (default: 30 s).
            max_cycles: Optional poll budget for monitoring.
        """
        self.client = client or SlurmClient()
        self.cancel_policy = cancel_policy
        self.on_event = on_event
        self.ticker = ticker or Ticker()
        self.max_cycles = max_cycles
        self._monitor: Monitor | None = None

    def set_event_callback(self, callback: EventCallback | None) -> None:
        """Set the event callback for progress tracking."""
        self.on_event = callback
        if self._monitor is not None:
            self._monitor.set_event_callback(callback)

    # -- submission ----------------------------------------------------------

    def create_strategy(
        self,
        name: str,
        generator: DescriptorGenerator,
        options: StrategyOptions | None = None,
    ) -> SubmissionStrategy:
        """Instantiate a registered strategy by name."""
        strategy_class = StrategyRegistry.get(name)
        options = options or StrategyOptions()
        if options.block and strategy_class.name != "sequential":
            logger.warning(f"--block has no effect with the {name!r} strategy")
        if options.block and options.ticker is None:
            options = StrategyOptions(
                max_concurrent=options.max_concurrent,
                block=options.block,
                ticker=self.ticker,
                max_cycles=options.max_cycles,
            )
        return strategy_class(generator, self.client, options, on_event=self.on_event)

    def submit(
        self,
        tasks: TaskList,
        generator: DescriptorGenerator,
        strategy: str = "array",
        options: StrategyOptions | None = None,
        dry_run: bool = False,
    ) -> SubmitResult:
        """
        Submit tasks with the named strategy.

        Raises:
            ConfigurationError: Unknown strategy or empty task list.
            SubmissionError: A submission failed.
            UnitTerminalFailure: A blocking sequential unit failed.
        """
        impl = self.create_strategy(strategy, generator, options)
        context = generator.context

        if dry_run:
            scripts = impl.plan(tasks)
            logger.info(
                f"Dry run: wrote {len(scripts)} script(s) under {context.scripts_dir}; "
                "nothing submitted"
            )
            return SubmitResult(context=context, tasks=tasks, record=None, scripts=tuple(scripts))

        record = self._submit(impl, tasks)
        return SubmitResult(
            context=context,
            tasks=tasks,
            record=record,
            handles=tuple(impl.handles),
        )

    # -- monitoring ----------------------------------------------------------

    def monitor(
        self,
        record: JobRegistryRecord,
        array_size: int | None = None,
        tasks: TaskList | None = None,
        handles: Sequence[JobHandle] = (),
    ) -> MonitorResult:
        """
        Poll a submitted run until every unit is terminal.

        Args:
            record: What was submitted.
            array_size: Declared array cardinality; defaults to the length of
                the run's task list when the run directory is known.
            tasks: The run's tasks, for reporting (read from the run
                directory when omitted).
            handles: Submission handles, for mapping ids to task names.

        Raises:
            MonitoringTimeout: The poll budget ran out.
            MonitoringCancelled: cancel() was called.
        """
        if tasks is None:
            tasks = read_run_tasks(record)
        if record.kind is SubmissionKind.ARRAY and array_size is None and tasks is not None:
            array_size = len(tasks)
            logger.info(f"Array size {array_size} taken from the run's task list")

        poller = StatePoller(self.client, record, array_size=array_size)
        self._monitor = Monitor(
            poller,
            ticker=self.ticker,
            max_cycles=self.max_cycles,
            on_event=self.on_event,
            task_names=unit_task_names(record, tasks, handles),
        )
        try:
            return self._monitor.run()
        except _FATAL:
            self._cancel_after_failure(list(record.ids))
            raise
        finally:
            self._monitor = None

    def submit_and_monitor(
        self,
        tasks: TaskList,
        generator: DescriptorGenerator,
        strategy: str = "array",
        options: StrategyOptions | None = None,
    ) -> MonitorResult:
        """Submit, then monitor the run to completion."""
        impl = self.create_strategy(strategy, generator, options)
        record = self._submit(impl, tasks)
        return self.monitor(
            record,
            array_size=len(tasks) if record.kind is SubmissionKind.ARRAY else None,
            tasks=tasks,
            handles=impl.handles,
        )

    def cancel(self) -> None:
        """Stop monitoring at the next wait (safe to call from a signal handler)."""
        self.ticker.cancel()

    # -- internals -----------------------------------------------------------

    def _submit(self, impl: SubmissionStrategy, tasks: TaskList) -> JobRegistryRecord:
        try:
            return impl.submit(tasks)
        except _FATAL:
            self._cancel_after_failure(impl.submitted_ids)
            raise

    def _cancel_after_failure(self, job_ids: Sequence[str]) -> None:
        if self.cancel_policy is not CancelPolicy.ON_ERROR or not job_ids:
            return
        logger.warning(f"Cancelling {len(job_ids)} submitted job(s): {', '.join(job_ids)}")
        failed = self.client.cancel(job_ids)
        if failed:
            logger.error(f"Could not cancel: {', '.join(failed)}")
