"""
Execution Schema - Per-call context and the values the engine passes around.

These are the small records every engine routine receives or returns:
where in the graph it runs (``ExecutionContext``), what to resume
(``ResumeDescriptor``), what an entry produced (``EntryOutcome``) and the
terminal envelope of a run (``RunResult``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stepflow.schemas.step_result import AnyStepResult, StepResultBase


class WorkflowRunStatus(StrEnum):
    """Status of a whole run, as recorded in snapshots."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


@dataclass
class RetryConfig:
    """Run-wide retry defaults; a step's own ``retries`` overrides ``attempts``."""

    attempts: int = 0  # Extra attempts after the first
    delay_ms: int = 0  # Pause before every attempt after the first


@dataclass
class ExecutionContext:
    """
    Where an entry executes.

    ``execution_path`` holds the positional indexes from the top-level
    sequence down to this entry. ``suspended_paths`` is shared by every
    context derived from the same top-level entry, so a suspend deep in a
    parallel block is visible to the dispatcher that persists the snapshot.
    """

    workflow_id: str
    run_id: str
    execution_path: list[int] = field(default_factory=list)
    suspended_paths: dict[str, list[int]] = field(default_factory=dict)
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    def child(self, index: int) -> ExecutionContext:
        """Context for the ``index``-th nested entry."""
        return ExecutionContext(
            workflow_id=self.workflow_id,
            run_id=self.run_id,
            execution_path=[*self.execution_path, index],
            suspended_paths=self.suspended_paths,
            retry_config=self.retry_config,
        )


@dataclass
class ResumeDescriptor:
    """
    What to resume and with which data.

    ``resume_path`` is consumed front to back as the engine descends: the
    top-level loop takes the first index, each parallel or conditional
    block on the way down the next one.
    """

    steps: list[str] = field(default_factory=list)
    step_results: dict[str, StepResultBase] = field(default_factory=dict)
    resume_payload: Any = None
    resume_path: list[int] = field(default_factory=list)
    suspended_paths: dict[str, list[int]] = field(default_factory=dict)  # As last persisted

    def copy(self) -> ResumeDescriptor:
        return ResumeDescriptor(
            steps=list(self.steps),
            step_results=dict(self.step_results),
            resume_payload=self.resume_payload,
            resume_path=list(self.resume_path),
            suspended_paths={k: list(v) for k, v in self.suspended_paths.items()},
        )


@dataclass
class EntryOutcome:
    """What the dispatcher returns for one entry."""

    result: StepResultBase
    step_results: dict[str, StepResultBase]
    execution_context: ExecutionContext


class RunResult(BaseModel):
    """
    Terminal envelope of a run.

    ``status`` is always success, failed or suspended. A canceled run is
    reported as failed with the cancellation as its error.
    """

    status: WorkflowRunStatus
    steps: dict[str, AnyStepResult] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    suspended: list[list[str]] | None = None  # [step_id, *nested_path] per suspended step

    model_config = {"extra": "allow"}
