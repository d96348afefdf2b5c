"""Tests for sleep, sleepUntil and waitForEvent entries."""

import asyncio
import time
from datetime import datetime, timedelta

import pytest
from conftest import v2_types, wait_for_listener

from stepflow.graph.entries import SleepEntry, SleepUntilEntry, StepEntry, WaitForEventEntry
from stepflow.graph.step import Step
from stepflow.observability.tracing import SpanType
from stepflow.runtime.emitter import user_event


def value_step(step_id: str, value):
    return Step(id=step_id, execute=lambda ctx: value)


class Recorder:
    """Step body that records its context."""

    def __init__(self):
        self.contexts = []

    def __call__(self, ctx):
        self.contexts.append(ctx)
        return {"input": ctx.input_data, "resume": ctx.resume_data}


# ---------------------------------------------------------------------------
# Sleep / sleepUntil
# ---------------------------------------------------------------------------


class TestSleep:
    @pytest.mark.asyncio
    async def test_sleep_passes_previous_output_through(self, engine):
        after = Recorder()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[
                StepEntry(value_step("a", "A")),
                SleepEntry("pause", duration_ms=5),
                StepEntry(Step("after", after)),
            ],
        )

        assert result.status == "success"
        assert after.contexts[0].input_data == "A"
        assert result.steps["pause"].output == "A"

    @pytest.mark.asyncio
    async def test_sleep_waits_for_duration(self, engine, tracer):
        started = time.perf_counter()

        await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[SleepEntry("pause", duration_ms=30)],
        )

        assert time.perf_counter() - started >= 0.025
        [span] = tracer.spans_by_type(SpanType.WORKFLOW_SLEEP)
        assert span.attributes["sleep_type"] == "fixed"

    @pytest.mark.asyncio
    async def test_dynamic_duration_gets_callback_context(self, engine, tracer):
        seen = []

        def duration(ctx):
            seen.append((ctx.run_count, ctx.input_data))
            return 1

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[SleepEntry("pause", fn=duration)],
            input="in",
        )

        assert result.status == "success"
        assert seen == [(-1, "in")]
        [span] = tracer.spans_by_type(SpanType.WORKFLOW_SLEEP)
        assert span.attributes["sleep_type"] == "dynamic"

    @pytest.mark.asyncio
    async def test_sleep_snapshots_waiting_then_running(self, engine, store):
        await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[StepEntry(value_step("a", 1)), SleepEntry("pause", duration_ms=1)],
        )

        waiting = [s for s in store.history("wf", "r1") if s.status == "waiting"]
        assert len(waiting) == 1
        assert waiting[0].waiting_paths == {"pause": [1]}
        assert waiting[0].context["pause"].status == "waiting"

    @pytest.mark.asyncio
    async def test_sleep_emits_waiting_event(self, engine, emitter):
        await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[SleepEntry("pause", duration_ms=1)],
            emitter=emitter,
        )

        types = v2_types(emitter)
        assert types.index("workflow-step-waiting") < types.index("workflow-step-result")

    @pytest.mark.asyncio
    async def test_sleep_until_past_date_returns_immediately(self, engine):
        started = time.perf_counter()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[SleepUntilEntry("until", date=datetime.now() - timedelta(hours=1))],
            input="x",
        )

        assert result.status == "success"
        assert result.result == "x"
        assert time.perf_counter() - started < 0.5

    @pytest.mark.asyncio
    async def test_sleep_until_future_date_waits(self, engine):
        started = time.perf_counter()

        await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[SleepUntilEntry("until", fn=lambda ctx: datetime.now() + timedelta(milliseconds=40))],
        )

        assert time.perf_counter() - started >= 0.03

    @pytest.mark.asyncio
    async def test_sleep_until_needs_a_datetime(self, engine):
        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[SleepUntilEntry("until", fn=lambda ctx: "tomorrow")],
        )

        assert result.status == "failed"
        assert "needs a datetime" in result.error


# ---------------------------------------------------------------------------
# waitForEvent
# ---------------------------------------------------------------------------


class TestWaitForEvent:
    @pytest.mark.asyncio
    async def test_event_data_becomes_resume_data(self, engine, emitter):
        body = Recorder()

        task = asyncio.create_task(
            engine.execute(
                workflow_id="wf",
                run_id="r1",
                graph=[
                    StepEntry(value_step("draft", "doc")),
                    WaitForEventEntry(Step("approval", body), event="approve"),
                ],
                emitter=emitter,
            )
        )
        await wait_for_listener(emitter, user_event("approve"))
        await emitter.emit(user_event("approve"), {"approved": True})
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status == "success"
        assert result.result == {"input": "doc", "resume": {"approved": True}}
        assert body.contexts[0].resume_data == {"approved": True}
        assert emitter.listener_count(user_event("approve")) == 0

    @pytest.mark.asyncio
    async def test_waiting_snapshot_written_before_event(self, engine, store, emitter):
        task = asyncio.create_task(
            engine.execute(
                workflow_id="wf",
                run_id="r1",
                graph=[WaitForEventEntry(Step("approval", Recorder()), event="approve")],
                emitter=emitter,
            )
        )
        await wait_for_listener(emitter, user_event("approve"))

        snapshot = await store.load_snapshot("wf", "r1")
        assert snapshot.status == "waiting"
        assert snapshot.waiting_paths == {"approval": [0]}

        await emitter.emit(user_event("approve"), "ok")
        await asyncio.wait_for(task, timeout=2)
        assert (await store.load_snapshot("wf", "r1")).status == "success"

    @pytest.mark.asyncio
    async def test_timeout_fails_entry(self, engine, emitter, tracer):
        body = Recorder()

        result = await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[WaitForEventEntry(Step("approval", body), event="approve", timeout_ms=20)],
            emitter=emitter,
        )

        assert result.status == "failed"
        assert "WORKFLOW_WAIT_FOR_EVENT_TIMEOUT" in result.error
        assert body.contexts == []
        assert emitter.listener_count(user_event("approve")) == 0
        [span] = tracer.spans_by_type(SpanType.WORKFLOW_WAIT_EVENT)
        assert span.status == "error"
        assert span.attributes["event_received"] is False

    @pytest.mark.asyncio
    async def test_waiting_event_emitted(self, engine, emitter):
        await engine.execute(
            workflow_id="wf",
            run_id="r1",
            graph=[WaitForEventEntry(Step("approval", Recorder()), event="approve", timeout_ms=5)],
            emitter=emitter,
        )

        types = v2_types(emitter)
        assert "workflow-step-waiting" in types
        assert types[-1] == "workflow-finish"
