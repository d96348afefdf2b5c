"""
stepflow - Async workflow execution engine.

Workflows are ordered lists of entries (steps, parallel blocks,
conditionals, loops, foreach, sleeps and event waits) run by an
``ExecutionEngine`` that persists a snapshot at every state change so a
suspended run can be resumed later.
"""

from stepflow.config import EngineConfig
from stepflow.errors import ErrorCategory, ErrorDomain, WorkflowError
from stepflow.graph import (
    ConditionalEntry,
    ExecutionGraph,
    ForeachEntry,
    LoopEntry,
    LoopType,
    ParallelEntry,
    SleepEntry,
    SleepUntilEntry,
    Step,
    StepContext,
    StepEntry,
    WaitForEventEntry,
)
from stepflow.runtime import AbortController, Emitter, ExecutionEngine, Run, Workflow
from stepflow.schemas import ResumeDescriptor, RetryConfig, RunResult, WorkflowSnapshot
from stepflow.storage import FileSnapshotStore, InMemorySnapshotStore

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "WorkflowError",
    "ErrorDomain",
    "ErrorCategory",
    "Step",
    "StepContext",
    "StepEntry",
    "ParallelEntry",
    "ConditionalEntry",
    "LoopEntry",
    "LoopType",
    "ForeachEntry",
    "SleepEntry",
    "SleepUntilEntry",
    "WaitForEventEntry",
    "ExecutionGraph",
    "ExecutionEngine",
    "Workflow",
    "Run",
    "Emitter",
    "AbortController",
    "ResumeDescriptor",
    "RetryConfig",
    "RunResult",
    "WorkflowSnapshot",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
]
