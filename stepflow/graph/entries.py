"""
Entries - The control-flow constructs a workflow is built from.

A workflow is an ordered list of entries. Each entry is one of:

- ``StepEntry``: run a single step
- ``ParallelEntry``: run nested entries concurrently
- ``ConditionalEntry``: run the nested entries whose condition holds
- ``LoopEntry``: repeat a step (do-while or do-until)
- ``ForeachEntry``: run a step once per element of the previous output
- ``SleepEntry`` / ``SleepUntilEntry``: pause for a duration or until a time
- ``WaitForEventEntry``: block until an external event arrives, then run a step

Entries are immutable; nested lists are stored as tuples.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar, Union

from stepflow.graph.step import Step, StepContext

# Condition and dynamic-sleep callbacks: (StepContext) -> value, sync or async
Condition = Callable[[StepContext], Any]


class LoopType(StrEnum):
    DOWHILE = "dowhile"  # Continue while the predicate is true
    DOUNTIL = "dountil"  # Continue until the predicate is true


@dataclass(frozen=True)
class StepEntry:
    type: ClassVar[str] = "step"

    step: Step


@dataclass(frozen=True)
class ParallelEntry:
    type: ClassVar[str] = "parallel"

    steps: tuple[StepFlowEntry, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True)
class ConditionalEntry:
    """``steps[i]`` runs when ``conditions[i]`` returns a truthy value."""

    type: ClassVar[str] = "conditional"

    steps: tuple[StepFlowEntry, ...]
    conditions: tuple[Condition, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "conditions", tuple(self.conditions))


@dataclass(frozen=True)
class LoopEntry:
    type: ClassVar[str] = "loop"

    step: Step
    condition: Condition
    loop_type: LoopType = LoopType.DOWHILE


@dataclass(frozen=True)
class ForeachEntry:
    """Run ``step`` per element, ``concurrency`` at a time (engine default when None)."""

    type: ClassVar[str] = "foreach"

    step: Step
    concurrency: int | None = None


@dataclass(frozen=True)
class SleepEntry:
    """Pause for ``duration_ms``, or for whatever ``fn`` returns (milliseconds)."""

    type: ClassVar[str] = "sleep"

    id: str
    duration_ms: float | None = None
    fn: Condition | None = None


@dataclass(frozen=True)
class SleepUntilEntry:
    """Pause until ``date``, or until whatever datetime ``fn`` returns."""

    type: ClassVar[str] = "sleepUntil"

    id: str
    date: datetime | None = None
    fn: Condition | None = None


@dataclass(frozen=True)
class WaitForEventEntry:
    """Block until ``event`` is sent to the run, then run ``step`` with its data."""

    type: ClassVar[str] = "waitForEvent"

    step: Step
    event: str
    timeout_ms: float | None = None


StepFlowEntry = Union[
    StepEntry,
    ParallelEntry,
    ConditionalEntry,
    LoopEntry,
    ForeachEntry,
    SleepEntry,
    SleepUntilEntry,
    WaitForEventEntry,
]

# Entries whose result is recorded under their step's id
STEP_BEARING_ENTRIES = (StepEntry, WaitForEventEntry, LoopEntry, ForeachEntry)


def entry_step_id(entry: StepFlowEntry) -> str | None:
    """Id under which an entry's result is recorded, if it has one."""
    if isinstance(entry, STEP_BEARING_ENTRIES):
        return entry.step.id
    if isinstance(entry, (SleepEntry, SleepUntilEntry)):
        return entry.id
    return None


def _callable_name(fn: Callable[..., Any] | None) -> str | None:
    if fn is None:
        return None
    return getattr(fn, "__name__", type(fn).__name__)


def _serialize_step(step: Step) -> dict[str, Any]:
    return {"id": step.id, "description": step.description}


def serialize_entry(entry: StepFlowEntry) -> dict[str, Any]:
    """JSON-safe description of one entry."""
    if isinstance(entry, StepEntry):
        return {"type": entry.type, "step": _serialize_step(entry.step)}
    if isinstance(entry, ParallelEntry):
        return {"type": entry.type, "steps": [serialize_entry(e) for e in entry.steps]}
    if isinstance(entry, ConditionalEntry):
        return {
            "type": entry.type,
            "steps": [serialize_entry(e) for e in entry.steps],
            "serialized_conditions": [
                {"id": f"condition_{i}", "fn": _callable_name(c)}
                for i, c in enumerate(entry.conditions)
            ],
        }
    if isinstance(entry, LoopEntry):
        return {
            "type": entry.type,
            "step": _serialize_step(entry.step),
            "serialized_condition": {"id": f"{entry.step.id}-condition", "fn": _callable_name(entry.condition)},
            "loop_type": entry.loop_type.value,
        }
    if isinstance(entry, ForeachEntry):
        return {
            "type": entry.type,
            "step": _serialize_step(entry.step),
            "opts": {"concurrency": entry.concurrency},
        }
    if isinstance(entry, SleepEntry):
        return {
            "type": entry.type,
            "id": entry.id,
            "duration_ms": entry.duration_ms,
            "fn": _callable_name(entry.fn),
        }
    if isinstance(entry, SleepUntilEntry):
        return {
            "type": entry.type,
            "id": entry.id,
            "date": entry.date.isoformat() if entry.date else None,
            "fn": _callable_name(entry.fn),
        }
    if isinstance(entry, WaitForEventEntry):
        return {
            "type": entry.type,
            "step": _serialize_step(entry.step),
            "event": entry.event,
            "timeout_ms": entry.timeout_ms,
        }
    raise TypeError(f"Unknown entry type: {type(entry).__name__}")


def serialize_step_graph(entries: Sequence[StepFlowEntry]) -> list[dict[str, Any]]:
    """JSON-safe description of a whole entry list, persisted in every snapshot."""
    return [serialize_entry(e) for e in entries]


@dataclass
class ExecutionGraph:
    """
    A workflow's ordered entry list.

    Example:
        graph = ExecutionGraph(
            id="orders",
            steps=[
                StepEntry(validate_step),
                ParallelEntry([StepEntry(tax_step), StepEntry(shipping_step)]),
                StepEntry(total_step),
            ],
        )
        errors = graph.validate()
    """

    id: str
    steps: list[StepFlowEntry] = field(default_factory=list)

    def serialize(self) -> list[dict[str, Any]]:
        return serialize_step_graph(self.steps)

    def validate(self) -> list[str]:
        """Validate the graph structure."""
        errors: list[str] = []

        if not self.steps:
            errors.append("Workflow must have at least one step")

        for i, entry in enumerate(self.steps):
            errors.extend(_validate_entry(entry, str(i)))

        return errors


def _validate_entry(entry: StepFlowEntry, where: str) -> list[str]:
    errors: list[str] = []

    if isinstance(entry, (ParallelEntry, ConditionalEntry)):
        if not entry.steps:
            errors.append(f"Entry {where}: {entry.type} block has no branches")
        if isinstance(entry, ConditionalEntry) and len(entry.steps) != len(entry.conditions):
            errors.append(
                f"Entry {where}: conditional has {len(entry.steps)} branches "
                f"but {len(entry.conditions)} conditions"
            )
        for i, child in enumerate(entry.steps):
            errors.extend(_validate_entry(child, f"{where}.{i}"))
    elif isinstance(entry, ForeachEntry):
        if entry.concurrency is not None and entry.concurrency < 1:
            errors.append(
                f"Entry {where}: foreach '{entry.step.id}' has concurrency "
                f"{entry.concurrency}, must be at least 1"
            )
    elif isinstance(entry, SleepEntry):
        if entry.duration_ms is None and entry.fn is None:
            errors.append(f"Entry {where}: sleep '{entry.id}' needs a duration or a fn")
    elif isinstance(entry, SleepUntilEntry):
        if entry.date is None and entry.fn is None:
            errors.append(f"Entry {where}: sleepUntil '{entry.id}' needs a date or a fn")
    elif not isinstance(entry, (StepEntry, LoopEntry, WaitForEventEntry)):
        errors.append(f"Entry {where}: unknown entry type {type(entry).__name__}")

    return errors
