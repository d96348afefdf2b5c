"""Tests for loop (dowhile/dountil) and foreach entries."""

import asyncio

import pytest
from conftest import v2_types

from stepflow.graph.entries import ForeachEntry, LoopEntry, LoopType, StepEntry
from stepflow.graph.step import Step
from stepflow.observability.tracing import SpanType


class Counter:
    """Step body that adds one to its input and records what it saw."""

    def __init__(self, fail_at: int | None = None):
        self.inputs: list = []
        self.run_counts: list[int] = []
        self.fail_at = fail_at

    async def __call__(self, ctx):
        self.inputs.append(ctx.input_data)
        self.run_counts.append(ctx.run_count)
        if self.fail_at is not None and ctx.input_data == self.fail_at:
            raise RuntimeError(f"failed at {ctx.input_data}")
        return ctx.input_data + 1


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class TestLoop:
    @pytest.mark.asyncio
    async def test_dowhile_with_false_predicate_runs_once(self, engine):
        body = Counter()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[LoopEntry(Step("inc", body), lambda ctx: False, LoopType.DOWHILE)],
            input=0,
        )

        assert result.result == 1
        assert body.inputs == [0]

    @pytest.mark.asyncio
    async def test_dountil_with_true_predicate_runs_once(self, engine):
        body = Counter()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[LoopEntry(Step("inc", body), lambda ctx: True, LoopType.DOUNTIL)],
            input=0,
        )

        assert result.result == 1
        assert body.inputs == [0]

    @pytest.mark.asyncio
    async def test_dowhile_feeds_each_output_into_next_iteration(self, engine):
        body = Counter()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[LoopEntry(Step("inc", body), lambda ctx: ctx.input_data < 3, LoopType.DOWHILE)],
            input=0,
        )

        assert result.status == "success"
        assert result.result == 3
        assert body.inputs == [0, 1, 2]
        assert body.run_counts == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_dountil_stops_once_predicate_holds(self, engine, tracer):
        body = Counter()

        async def reached_five(ctx):
            return ctx.input_data >= 5

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[LoopEntry(Step("inc", body), reached_five, LoopType.DOUNTIL)],
            input=2,
        )

        assert result.result == 5
        assert body.inputs == [2, 3, 4]
        [loop_span] = tracer.spans_by_type(SpanType.WORKFLOW_LOOP)
        assert loop_span.attributes["total_iterations"] == 3

    @pytest.mark.asyncio
    async def test_body_failure_ends_loop(self, engine):
        body = Counter(fail_at=2)

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[LoopEntry(Step("inc", body), lambda ctx: True, LoopType.DOWHILE)],
            input=0,
        )

        assert result.status == "failed"
        assert "failed at 2" in result.error
        assert body.inputs == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_predicate_error_stops_with_last_result(self, engine):
        body = Counter()

        def broken(ctx):
            raise ValueError("predicate broke")

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[LoopEntry(Step("inc", body), broken, LoopType.DOUNTIL)],
            input=10,
        )

        assert result.status == "success"
        assert result.result == 11
        assert body.inputs == [10]

    @pytest.mark.asyncio
    async def test_loop_result_recorded_under_step_id(self, engine):
        seen = {}

        def after(ctx):
            seen["input"] = ctx.input_data

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[
                LoopEntry(Step("inc", Counter()), lambda ctx: ctx.input_data < 2),
                StepEntry(Step("after", after)),
            ],
            input=0,
        )

        assert result.steps["inc"].output == 2
        assert seen["input"] == 2


# ---------------------------------------------------------------------------
# Foreach
# ---------------------------------------------------------------------------


class InFlightTracker:
    """Step body recording concurrency and start order."""

    def __init__(self, fail_on=None):
        self.in_flight = 0
        self.max_in_flight = 0
        self.started: list = []
        self.fail_on = fail_on

    async def __call__(self, ctx):
        self.started.append(ctx.input_data)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Larger items finish first, so ordering comes from the engine
            await asyncio.sleep(0.002 * (10 - ctx.input_data))
            if ctx.input_data == self.fail_on:
                raise RuntimeError(f"item {ctx.input_data} failed")
            return ctx.input_data * 10
        finally:
            self.in_flight -= 1


class TestForeach:
    @pytest.mark.asyncio
    async def test_batches_respect_concurrency(self, engine):
        tracker = InFlightTracker()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[ForeachEntry(Step("each", tracker), concurrency=2)],
            input=[1, 2, 3, 4, 5],
        )

        assert result.status == "success"
        assert tracker.max_in_flight == 2
        assert result.result == [10, 20, 30, 40, 50]

    @pytest.mark.asyncio
    async def test_failure_stops_later_batches(self, engine):
        tracker = InFlightTracker(fail_on=4)

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[ForeachEntry(Step("each", tracker), concurrency=2)],
            input=[1, 2, 3, 4, 5],
        )

        assert result.status == "failed"
        assert "item 4 failed" in result.error
        assert 5 not in tracker.started
        assert sorted(tracker.started) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_default_concurrency_comes_from_config(self, engine):
        tracker = InFlightTracker()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[ForeachEntry(Step("each", tracker))],
            input=[3, 1, 2],
        )

        assert tracker.max_in_flight == 1
        assert tracker.started == [3, 1, 2]
        assert result.result == [30, 10, 20]

    @pytest.mark.asyncio
    async def test_empty_list_succeeds_with_empty_output(self, engine):
        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[ForeachEntry(Step("each", InFlightTracker()), concurrency=3)],
            input=[],
        )

        assert result.status == "success"
        assert result.result == []

    @pytest.mark.asyncio
    async def test_non_list_input_fails(self, engine):
        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[ForeachEntry(Step("each", InFlightTracker()))],
            input={"not": "a list"},
        )

        assert result.status == "failed"
        assert "expects a list" in result.error

    @pytest.mark.asyncio
    async def test_items_do_not_emit_their_own_events(self, engine, emitter):
        await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[ForeachEntry(Step("each", InFlightTracker()), concurrency=2)],
            input=[1, 2, 3],
            emitter=emitter,
        )

        types = v2_types(emitter)
        assert types.count("workflow-step-start") == 1
        assert types.count("workflow-step-result") == 1
