"""Workflow structure: steps and the control-flow entries that arrange them."""

from stepflow.graph.entries import (
    ConditionalEntry,
    ExecutionGraph,
    ForeachEntry,
    LoopEntry,
    LoopType,
    ParallelEntry,
    SleepEntry,
    SleepUntilEntry,
    StepEntry,
    StepFlowEntry,
    WaitForEventEntry,
    serialize_step_graph,
)
from stepflow.graph.step import Scorer, ScorerInput, Step, StepContext

__all__ = [
    "Step",
    "StepContext",
    "Scorer",
    "ScorerInput",
    "StepEntry",
    "ParallelEntry",
    "ConditionalEntry",
    "LoopEntry",
    "LoopType",
    "ForeachEntry",
    "SleepEntry",
    "SleepUntilEntry",
    "WaitForEventEntry",
    "StepFlowEntry",
    "ExecutionGraph",
    "serialize_step_graph",
]
