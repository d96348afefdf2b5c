"""Pydantic and dataclass records exchanged by the engine and storage."""

from stepflow.schemas.execution import (
    EntryOutcome,
    ExecutionContext,
    ResumeDescriptor,
    RetryConfig,
    RunResult,
    WorkflowRunStatus,
)
from stepflow.schemas.snapshot import WorkflowSnapshot
from stepflow.schemas.step_result import (
    AnyStepResult,
    StepBailed,
    StepCanceled,
    StepFailure,
    StepResultBase,
    StepRunning,
    StepStatus,
    StepSuccess,
    StepSuspended,
    StepWaiting,
)

__all__ = [
    "AnyStepResult",
    "StepResultBase",
    "StepStatus",
    "StepSuccess",
    "StepFailure",
    "StepSuspended",
    "StepBailed",
    "StepCanceled",
    "StepRunning",
    "StepWaiting",
    "RetryConfig",
    "ExecutionContext",
    "ResumeDescriptor",
    "EntryOutcome",
    "RunResult",
    "WorkflowRunStatus",
    "WorkflowSnapshot",
]
