"""
batchflow: Submit task lists to Slurm and track them to completion.

A run turns a list of task names into scheduler jobs under one of three
submission strategies (array, parallel, sequential), persists a one-line
job registry describing what was submitted, and polls sacct/squeue until
every unit reaches a terminal state.

Example:
    import batchflow

    context = batchflow.RunContext.create(run_base="runs")
    generator = batchflow.DescriptorGenerator(
        batchflow.ResourceSpec(partition="normal", time_limit="04:00:00"),
        context,
    )
    runner = batchflow.Runner(cancel_policy=batchflow.CancelPolicy.ON_ERROR)
    result = runner.submit_and_monitor(
        batchflow.TaskList.parse("s1,s2,s3"),
        generator,
        strategy="array",
        options=batchflow.StrategyOptions(max_concurrent=2),
    )
    print(result.success, result.failed_tasks)

    # Re-attach to a run from another process
    record = batchflow.JobRegistryRecord.read(context.registry_path)
    result = batchflow.Runner().monitor(record)
"""

__version__ = "0.1.0"

# Config
from batchflow.config import ProjectConfig, ResolvedConfig, resolve_config

# Descriptors
from batchflow.descriptor import (
    ArrayRange,
    DescriptorGenerator,
    IndexResolved,
    StaticName,
    SubmissionDescriptor,
    array_range,
)

# Errors
from batchflow.errors import (
    BatchflowError,
    ConfigurationError,
    MonitoringCancelled,
    MonitoringTimeout,
    PollingBackendUnavailable,
    RegistryFormatError,
    SubmissionError,
    TaskResolutionError,
    UnitTerminalFailure,
)

# Events
from batchflow.events import Event, EventCallback, EventKind

# Monitoring
from batchflow.monitor import AggregateSnapshot, Monitor, MonitorResult, StatusAggregator
from batchflow.poller import Clock, StatePoller, SystemClock, Ticker, wait_for_unit

# Registry
from batchflow.registry import JobRegistryRecord

# Runner
from batchflow.runner import CancelPolicy, Runner, SubmitResult, load_record

# Scheduler
from batchflow.scheduler import SlurmClient, UnitInfo

# State
from batchflow.state import StateClass, UnitState, classify

# Strategies
from batchflow.strategy import (
    ArrayStrategy,
    ParallelIndividualStrategy,
    SequentialIndividualStrategy,
    StrategyOptions,
    StrategyRegistry,
    SubmissionStrategy,
)

# Types
from batchflow.types import (
    EngineSpec,
    JobHandle,
    ResourceSpec,
    RunContext,
    SubmissionKind,
    TaskList,
)

__all__ = [
    "__version__",
    # Config
    "ProjectConfig",
    "ResolvedConfig",
    "resolve_config",
    # Descriptors
    "ArrayRange",
    "DescriptorGenerator",
    "IndexResolved",
    "StaticName",
    "SubmissionDescriptor",
    "array_range",
    # Errors
    "BatchflowError",
    "ConfigurationError",
    "MonitoringCancelled",
    "MonitoringTimeout",
    "PollingBackendUnavailable",
    "RegistryFormatError",
    "SubmissionError",
    "TaskResolutionError",
    "UnitTerminalFailure",
    # Events
    "Event",
    "EventCallback",
    "EventKind",
    # Monitoring
    "AggregateSnapshot",
    "Monitor",
    "MonitorResult",
    "StatusAggregator",
    "Clock",
    "StatePoller",
    "SystemClock",
    "Ticker",
    "wait_for_unit",
    # Registry
    "JobRegistryRecord",
    # Runner
    "CancelPolicy",
    "Runner",
    "SubmitResult",
    "load_record",
    # Scheduler
    "SlurmClient",
    "UnitInfo",
    # State
    "StateClass",
    "UnitState",
    "classify",
    # Strategies
    "ArrayStrategy",
    "ParallelIndividualStrategy",
    "SequentialIndividualStrategy",
    "StrategyOptions",
    "StrategyRegistry",
    "SubmissionStrategy",
    # Types
    "EngineSpec",
    "JobHandle",
    "ResourceSpec",
    "RunContext",
    "SubmissionKind",
    "TaskList",
]
