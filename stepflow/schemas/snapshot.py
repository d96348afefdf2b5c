"""
Snapshot Schema - Durable run state for observability and resume.

A snapshot is written whenever a step starts, waits, or finishes, and once
more when the run ends. The latest snapshot of a run is everything
``Run.resume`` needs: the step results so far, the positional path of
every suspended step, and the original workflow input.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from stepflow.schemas.execution import WorkflowRunStatus
from stepflow.schemas.step_result import AnyStepResult, StepResultBase


class WorkflowSnapshot(BaseModel):
    """Single snapshot in a run's timeline."""

    # Identity
    workflow_id: str
    run_id: str
    status: WorkflowRunStatus

    # Execution state
    context: dict[str, AnyStepResult] = Field(default_factory=dict)  # step_id -> result
    input: Any = None
    serialized_step_graph: list[dict[str, Any]] = Field(default_factory=list)
    suspended_paths: dict[str, list[int]] = Field(default_factory=dict)
    waiting_paths: dict[str, list[int]] = Field(default_factory=dict)

    # Terminal fields, set on the final snapshot
    result: Any = None
    error: str | None = None

    timestamp: datetime = Field(default_factory=datetime.now)

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        workflow_id: str,
        run_id: str,
        status: WorkflowRunStatus | str,
        step_results: dict[str, StepResultBase],
        input: Any = None,
        serialized_step_graph: list[dict[str, Any]] | None = None,
        suspended_paths: dict[str, list[int]] | None = None,
        waiting_paths: dict[str, list[int]] | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> "WorkflowSnapshot":
        """
        Build a snapshot from live engine state.

        Containers are copied so later mutation of the run's state does not
        leak into a snapshot that has already been handed to a store.
        """
        return cls(
            workflow_id=workflow_id,
            run_id=run_id,
            status=WorkflowRunStatus(status),
            context=dict(step_results),
            input=input,
            serialized_step_graph=list(serialized_step_graph or []),
            suspended_paths={k: list(v) for k, v in (suspended_paths or {}).items()},
            waiting_paths={k: list(v) for k, v in (waiting_paths or {}).items()},
            result=result,
            error=error,
        )

    @property
    def suspended_steps(self) -> list[str]:
        """Ids of steps whose latest result is suspended."""
        return [step_id for step_id, r in self.context.items() if r.status == "suspended"]
