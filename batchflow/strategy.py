"""
Submission strategies: how a task list becomes scheduler jobs.

Provides:
- StrategyOptions: Knobs shared by every strategy
- SubmissionStrategy: Abstract base (one interface, one shared generator)
- ArrayStrategy: One array job covering every task ("array")
- ParallelIndividualStrategy: One job per task, submitted concurrently ("parallel")
- SequentialIndividualStrategy: One job per task, in order ("sequential")
- StrategyRegistry: Name -> strategy class lookup

Third-party strategies are discovered from ``batchflow.strategies`` entry
points, alongside the built-ins.

Every strategy writes the task list and run spec, submits, and writes
exactly one job registry record describing what was submitted.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from importlib.metadata import entry_points
from pathlib import Path
from typing import ClassVar

from batchflow.descriptor import DescriptorGenerator, SubmissionDescriptor
from batchflow.errors import ConfigurationError, SubmissionError, UnitTerminalFailure
from batchflow.events import Event, EventCallback, emit_event
from batchflow.poller import StatePoller, Ticker, wait_for_unit
from batchflow.registry import JobRegistryRecord
from batchflow.scheduler import SlurmClient
from batchflow.state import StateClass
from batchflow.types import JobHandle, RunContext, SubmissionKind, TaskList

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyOptions:
    """
    Options shared by all strategies.

    Attributes:
        max_concurrent: Cap on simultaneously running (array) or
            simultaneously submitting (parallel) units. None means no cap.
        block: Sequential only: wait for each unit to finish before
            submitting the next.
        ticker: Sequential only: wait between polls while blocking.
        max_cycles: Sequential only: poll budget per unit while blocking.
    """

    max_concurrent: int | None = None
    block: bool = False
    ticker: Ticker | None = None
    max_cycles: int | None = None


class SubmissionStrategy(ABC):
    """
    Abstract base for submission strategies.

    Subclasses implement _submit(); the base class handles the task list
    and run spec artifacts, the registry record and events.
    """

    name: ClassVar[str] = ""
    kind: ClassVar[SubmissionKind]

    def __init__(
        self,
        generator: DescriptorGenerator,
        client: SlurmClient,
        options: StrategyOptions | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        """
        Args:
            generator: Shared descriptor generator for the run.
            client: Slurm command wrapper.
            options: Strategy options.
            on_event: Optional callback receiving UNIT_SUBMITTED events.
        """
        self.generator = generator
        self.client = client
        self.options = options or StrategyOptions()
        self._on_event = on_event
        self.handles: list[JobHandle] = []

    @property
    def context(self) -> RunContext:
        return self.generator.context

    @property
    def submitted_ids(self) -> list[str]:
        """Every scheduler id accepted so far, in registry order."""
        return [h.scheduler_id for h in self.handles]

    def submit(self, tasks: TaskList) -> JobRegistryRecord:
        """
        Submit every task and persist the registry record.

        Args:
            tasks: Tasks to run.

        Returns:
            The record written to the run's job registry.

        Raises:
            ConfigurationError: If the task list is empty.
            SubmissionError: If any submission fails.
        """
        if not len(tasks):
            raise ConfigurationError("No tasks to submit")
        self.generator.write_run_spec(tasks)
        logger.info(
            f"Submitting {len(tasks)} task(s) with the {self.name!r} strategy "
            f"(run {self.context.run_id})"
        )
        self._submit(tasks)
        return self._write_record()

    def plan(self, tasks: TaskList) -> list[Path]:
        """
        Write the run artifacts and scripts without submitting anything.

        Returns:
            Paths of the rendered sbatch scripts.
        """
        if not len(tasks):
            raise ConfigurationError("No tasks to submit")
        self.generator.write_run_spec(tasks)
        return [self.generator.write_script(d) for d in self.descriptors(tasks)]

    @abstractmethod
    def descriptors(self, tasks: TaskList) -> list[SubmissionDescriptor]:
        """The descriptors this strategy submits for *tasks*."""
        ...

    @abstractmethod
    def _submit(self, tasks: TaskList) -> None:
        """Submit the descriptors, appending a handle per accepted job."""
        ...

    # -- helpers -------------------------------------------------------------

    def _accept(self, job_id: str, task: str | None, units: int = 1) -> JobHandle:
        handle = JobHandle(scheduler_id=job_id, kind=self.kind, task=task)
        self.handles.append(handle)
        label = f" for task {task!r}" if task else ""
        logger.info(f"Submitted job {job_id}{label}")
        emit_event(
            self._on_event,
            Event.unit_submitted(job_id, task=task, kind=self.kind.value, units=units),
        )
        return handle

    def _write_record(self) -> JobRegistryRecord:
        record = JobRegistryRecord(
            kind=self.kind,
            ids=tuple(self.submitted_ids),
            run_dir=str(self.context.run_dir),
        )
        record.write(self.context.registry_path)
        return record


# ---------------------------------------------------------------------------
# Built-in strategies
# ---------------------------------------------------------------------------


class ArrayStrategy(SubmissionStrategy):
    """
    Submit all tasks as one Slurm job array.

    Concurrency is delegated to Slurm through the ``%cap`` suffix of the
    array range. A single task is submitted as a plain job.
    """

    name = "array"
    kind = SubmissionKind.ARRAY

    def descriptors(self, tasks: TaskList) -> list[SubmissionDescriptor]:
        return [self.generator.array_descriptor(tasks, self.options.max_concurrent)]

    def _submit(self, tasks: TaskList) -> None:
        (descriptor,) = self.descriptors(tasks)
        script = self.generator.write_script(descriptor)
        job_id = self.client.submit(script)
        task = tasks.names[0] if len(tasks) == 1 else None
        self._accept(job_id, task, units=descriptor.unit_count)
        if descriptor.array_range is not None:
            logger.info(f"Array {job_id}_[{descriptor.array_range}]")


class ParallelIndividualStrategy(SubmissionStrategy):
    """
    Submit one job per task, issuing sbatch calls concurrently.

    At most ``min(max_concurrent, N)`` submissions are in flight at once.
    Ids are recorded in completion order. If any submission fails, the
    pool is drained first and the error carries every id that was accepted.
    """

    name = "parallel"
    kind = SubmissionKind.INDIVIDUAL

    def descriptors(self, tasks: TaskList) -> list[SubmissionDescriptor]:
        return [self.generator.individual_descriptor(task) for task in tasks]

    def max_workers(self, task_count: int) -> int:
        """Size of the submission pool."""
        cap = self.options.max_concurrent
        if cap is None or cap <= 0:
            return task_count
        return min(cap, task_count)

    def _submit(self, tasks: TaskList) -> None:
        scripts = {
            task: self.generator.write_script(descriptor)
            for task, descriptor in zip(tasks, self.descriptors(tasks))
        }
        failures: list[tuple[str, SubmissionError]] = []

        with ThreadPoolExecutor(max_workers=self.max_workers(len(tasks))) as pool:
            futures = {
                pool.submit(self.client.submit, script): task
                for task, script in scripts.items()
            }
            for future in as_completed(futures):
                task = futures[future]
                try:
                    job_id = future.result()
                except SubmissionError as e:
                    logger.error(f"Submission failed for task {task!r}: {e}")
                    failures.append((task, e))
                    continue
                self._accept(job_id, task)

        if failures:
            names = ", ".join(task for task, _ in failures)
            raise SubmissionError(
                f"{len(failures)} of {len(tasks)} submission(s) failed ({names}): "
                f"{failures[0][1]}",
                submitted_ids=self.submitted_ids,
            )


class SequentialIndividualStrategy(SubmissionStrategy):
    """
    Submit one job per task, one at a time, in input order.

    With ``block=True`` each unit must reach a terminal state before the
    next task is submitted. A terminal failure stops the run: the record
    of what was submitted so far is written and UnitTerminalFailure is
    raised.
    """

    name = "sequential"
    kind = SubmissionKind.INDIVIDUAL

    def descriptors(self, tasks: TaskList) -> list[SubmissionDescriptor]:
        return [self.generator.individual_descriptor(task) for task in tasks]

    def _submit(self, tasks: TaskList) -> None:
        for task, descriptor in zip(tasks, self.descriptors(tasks)):
            script = self.generator.write_script(descriptor)
            try:
                job_id = self.client.submit(script)
            except SubmissionError as e:
                raise SubmissionError(
                    f"Submission failed for task {task!r}: {e}",
                    submitted_ids=self.submitted_ids,
                ) from e
            self._accept(job_id, task)

            if self.options.block:
                self._wait(job_id, task)

    def _wait(self, job_id: str, task: str) -> None:
        record = JobRegistryRecord(
            kind=SubmissionKind.INDIVIDUAL,
            ids=(job_id,),
            run_dir=str(self.context.run_dir),
        )
        poller = StatePoller(self.client, record)
        ticker = self.options.ticker or Ticker()
        logger.info(f"Waiting for job {job_id} (task {task!r})")
        info = wait_for_unit(poller, job_id, ticker, self.options.max_cycles)

        if info.state.state_class is StateClass.TERMINAL_FAILURE:
            logger.error(
                f"Task {task!r} (job {job_id}) ended in {info.state.value}; "
                "remaining tasks will not be submitted"
            )
            emit_event(
                self._on_event,
                Event.unit_failed(job_id, info.state.value, task=task),
            )
            self._write_record()
            raise UnitTerminalFailure(job_id, info.state, submitted_ids=self.submitted_ids)

        emit_event(self._on_event, Event.unit_finished(job_id, task=task))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class StrategyRegistry:
    """
    Registry mapping strategy names to classes.

    Built-ins are always present; ``batchflow.strategies`` entry points are
    loaded lazily on first lookup.
    """

    _strategies: dict[str, type[SubmissionStrategy]] = {
        ArrayStrategy.name: ArrayStrategy,
        ParallelIndividualStrategy.name: ParallelIndividualStrategy,
        SequentialIndividualStrategy.name: SequentialIndividualStrategy,
    }
    _loaded: bool = False

    @classmethod
    def _ensure_loaded(cls) -> None:
        """Load all strategy entry points (once)."""
        if cls._loaded:
            return
        cls._loaded = True
        for ep in entry_points(group="batchflow.strategies"):
            if ep.name in cls._strategies:
                continue
            try:
                cls._strategies[ep.name] = ep.load()
            except Exception:  # noqa: BLE001
                logger.debug("Failed to load strategy entry point %r", ep.name, exc_info=True)

    @classmethod
    def register(cls, strategy_class: type[SubmissionStrategy]) -> type[SubmissionStrategy]:
        """Register a strategy class under its ``name`` (usable as a decorator)."""
        cls._strategies[strategy_class.name] = strategy_class
        return strategy_class

    @classmethod
    def get(cls, name: str) -> type[SubmissionStrategy]:
        """
        Get the class for a strategy name.

        Raises:
            ConfigurationError: If no strategy has that name.
        """
        cls._ensure_loaded()
        try:
            return cls._strategies[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown strategy: {name!r}. Available: {cls.types()}"
            ) from None

    @classmethod
    def types(cls) -> list[str]:
        """List all registered strategy names."""
        cls._ensure_loaded()
        return list(cls._strategies.keys())
