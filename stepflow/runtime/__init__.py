"""Execution runtime: the engine, run handles and per-run plumbing."""

from stepflow.runtime.abort import AbortController, AbortSignal
from stepflow.runtime.emitter import Emitter, EventName, WatchEventType, WorkflowEvent
from stepflow.runtime.engine import ExecutionEngine, RunState
from stepflow.runtime.workflow import Run, Workflow
from stepflow.runtime.writer import StepWriter

__all__ = [
    "ExecutionEngine",
    "RunState",
    "Workflow",
    "Run",
    "Emitter",
    "EventName",
    "WatchEventType",
    "WorkflowEvent",
    "AbortController",
    "AbortSignal",
    "StepWriter",
]
