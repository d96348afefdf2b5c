"""Tests for entry definitions, graph validation and serialization."""

from datetime import datetime

import pytest

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
    WaitForEventEntry,
    entry_step_id,
    serialize_step_graph,
)
from stepflow.graph.step import Step, StepContext
from stepflow.schemas.step_result import StepFailure, StepSuccess


def noop(ctx):
    return None


def is_ready(ctx):
    return True


STEP = Step(id="a", execute=noop, description="first step")


class TestValidation:
    def test_valid_graph(self):
        graph = ExecutionGraph(
            id="wf",
            steps=[
                StepEntry(STEP),
                ParallelEntry([StepEntry(Step("b", noop)), StepEntry(Step("c", noop))]),
                ConditionalEntry(steps=[StepEntry(Step("d", noop))], conditions=[is_ready]),
                LoopEntry(Step("e", noop), is_ready, LoopType.DOUNTIL),
                ForeachEntry(Step("f", noop), concurrency=2),
                SleepEntry("s1", duration_ms=10),
                SleepUntilEntry("s2", date=datetime(2030, 1, 1)),
                WaitForEventEntry(Step("g", noop), event="go"),
            ],
        )
        assert graph.validate() == []

    def test_empty_graph(self):
        assert graph_errors([]) == ["Workflow must have at least one step"]

    def test_conditional_length_mismatch(self):
        errors = graph_errors(
            [ConditionalEntry(steps=[StepEntry(STEP)], conditions=[is_ready, is_ready])]
        )
        assert errors == ["Entry 0: conditional has 1 branches but 2 conditions"]

    def test_nested_problems_report_their_position(self):
        errors = graph_errors(
            [StepEntry(STEP), ParallelEntry([StepEntry(STEP), ParallelEntry([])])]
        )
        assert errors == ["Entry 1.1: parallel block has no branches"]

    @pytest.mark.parametrize(
        "entry, fragment",
        [
            (ForeachEntry(STEP, concurrency=0), "must be at least 1"),
            (SleepEntry("s"), "needs a duration or a fn"),
            (SleepUntilEntry("s"), "needs a date or a fn"),
            ("not an entry", "unknown entry type str"),
        ],
    )
    def test_invalid_entries(self, entry, fragment):
        [error] = graph_errors([entry])
        assert fragment in error


def graph_errors(steps):
    return ExecutionGraph(id="wf", steps=steps).validate()


class TestEntries:
    def test_nested_sequences_become_tuples(self):
        entry = ParallelEntry([StepEntry(STEP)])
        assert isinstance(entry.steps, tuple)

    def test_entries_are_frozen(self):
        with pytest.raises(AttributeError):
            StepEntry(STEP).step = Step("b", noop)

    def test_entry_step_id(self):
        assert entry_step_id(StepEntry(STEP)) == "a"
        assert entry_step_id(ForeachEntry(STEP)) == "a"
        assert entry_step_id(SleepEntry("pause", duration_ms=1)) == "pause"
        assert entry_step_id(ParallelEntry([StepEntry(STEP)])) is None


class TestSerialization:
    def test_serialize_step_graph(self):
        serialized = serialize_step_graph(
            [
                StepEntry(STEP),
                ConditionalEntry(steps=[StepEntry(STEP)], conditions=[is_ready]),
                LoopEntry(STEP, is_ready, LoopType.DOUNTIL),
                ForeachEntry(STEP, concurrency=3),
                SleepUntilEntry("until", date=datetime(2030, 1, 1)),
                WaitForEventEntry(STEP, event="go", timeout_ms=500),
            ]
        )

        assert serialized[0] == {"type": "step", "step": {"id": "a", "description": "first step"}}
        assert serialized[1]["serialized_conditions"] == [{"id": "condition_0", "fn": "is_ready"}]
        assert serialized[2]["loop_type"] == "dountil"
        assert serialized[2]["serialized_condition"]["fn"] == "is_ready"
        assert serialized[3]["opts"] == {"concurrency": 3}
        assert serialized[4]["date"] == "2030-01-01T00:00:00"
        assert serialized[5]["event"] == "go"
        assert serialized[5]["timeout_ms"] == 500

    def test_graph_serialize_matches_function(self):
        graph = ExecutionGraph(id="wf", steps=[ParallelEntry([StepEntry(STEP)])])
        assert graph.serialize() == [
            {"type": "parallel", "steps": [{"type": "step", "step": {"id": "a", "description": "first step"}}]}
        ]


class TestStepContext:
    def test_get_step_result_only_exposes_successes(self):
        ctx = StepContext(
            input_data=None,
            run_id="r1",
            workflow_id="wf",
            _init_data={"x": 1},
            _step_results={"a": StepSuccess(output=5), "b": StepFailure(error="boom")},
        )

        assert ctx.get_init_data() == {"x": 1}
        assert ctx.get_step_result("a") == 5
        assert ctx.get_step_result(STEP) == 5
        assert ctx.get_step_result("b") is None
        assert ctx.get_step_result("missing") is None

    @pytest.mark.asyncio
    async def test_callback_context_primitives_are_inert(self):
        ctx = StepContext(input_data=None, run_id="r1", workflow_id="wf", run_count=-1)

        assert await ctx.suspend({"x": 1}) is None
        ctx.bail("out")
        ctx.abort()
