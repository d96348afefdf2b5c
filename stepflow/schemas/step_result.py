"""
Step Result Schema - Tagged outcome of running one entry.

Each status is its own model so a result only carries the fields that make
sense for it (a suspended result has no output, a failure has no output
but an error). ``AnyStepResult`` is the discriminated union used wherever
results are loaded back from storage.
"""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class StepStatus(StrEnum):
    """Status of a single step result."""

    SUCCESS = "success"
    FAILED = "failed"
    SUSPENDED = "suspended"
    BAILED = "bailed"  # Voluntary early successful termination of the run
    CANCELED = "canceled"  # Abort signal fired while the entry ran
    RUNNING = "running"
    WAITING = "waiting"


class StepResultBase(BaseModel):
    """Fields shared by every result variant."""

    payload: Any = None  # Input the step received
    resume_payload: Any = None  # Resume data, when the step was resumed
    suspend_payload: Any = None  # Payload of the last suspend, if any
    started_at: datetime | None = None
    resumed_at: datetime | None = None

    model_config = {"extra": "allow"}


class StepSuccess(StepResultBase):
    status: Literal["success"] = "success"
    output: Any = None
    ended_at: datetime = Field(default_factory=datetime.now)


class StepFailure(StepResultBase):
    status: Literal["failed"] = "failed"
    error: str | None = None
    ended_at: datetime = Field(default_factory=datetime.now)


class StepSuspended(StepResultBase):
    status: Literal["suspended"] = "suspended"
    suspended_at: datetime = Field(default_factory=datetime.now)


class StepBailed(StepResultBase):
    status: Literal["bailed"] = "bailed"
    output: Any = None
    ended_at: datetime = Field(default_factory=datetime.now)


class StepCanceled(StepResultBase):
    status: Literal["canceled"] = "canceled"
    output: Any = None
    error: str | None = None
    ended_at: datetime = Field(default_factory=datetime.now)


class StepRunning(StepResultBase):
    status: Literal["running"] = "running"


class StepWaiting(StepResultBase):
    status: Literal["waiting"] = "waiting"


StepResult = (
    StepSuccess | StepFailure | StepSuspended | StepBailed | StepCanceled | StepRunning | StepWaiting
)

AnyStepResult = Annotated[StepResult, Field(discriminator="status")]


def as_canceled(result: StepResultBase) -> StepCanceled:
    """Return a canceled copy of ``result``, keeping its output/error fields."""
    if isinstance(result, StepCanceled):
        return result
    data = result.model_dump(exclude={"status"})
    data.pop("ended_at", None)
    data.pop("suspended_at", None)
    return StepCanceled(**data)


def step_output(result: StepResultBase | None) -> Any:
    """Output of a result, or None for variants that carry no output."""
    if result is None:
        return None
    return getattr(result, "output", None)
