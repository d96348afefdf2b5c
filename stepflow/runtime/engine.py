"""
Execution Engine - Runs a workflow's entry list to a terminal result.

The engine walks the top-level entries in order. Each entry goes through
``execute_entry``, which dispatches on the entry type, records the result,
checks the abort signal and persists a snapshot. The first entry that does
not succeed ends the run.

Everything mutable about a run (step results, run counts, the emitter and
the abort controller) lives in a ``RunState`` created per ``execute`` call,
so one engine can drive any number of concurrent runs.

Snapshots are written:
- before each step starts (status running)
- when a timed wait begins (status waiting)
- after every entry, nested ones included
- once more when the run ends, with the terminal result or error
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stepflow.config import EngineConfig
from stepflow.errors import (
    CONDITION_EVALUATION_FAILED,
    EMPTY_GRAPH,
    ENGINE_STEP_DISPATCH_FAILED,
    FAILED_TO_FETCH_SCORERS,
    INVALID_GRAPH,
    RUN_NOT_RESUMABLE,
    SCORER_FAILED,
    STEP_EXECUTION_FAILED,
    WAIT_FOR_EVENT_TIMEOUT,
    WorkflowError,
    format_error,
    normalize_error,
)
from stepflow.graph.entries import (
    STEP_BEARING_ENTRIES,
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
    entry_step_id,
    serialize_step_graph,
)
from stepflow.graph.step import ScorerInput, Step, StepContext, StepControl, call_maybe_async
from stepflow.observability.logging import reset_trace_context, set_trace_context
from stepflow.observability.tracing import NOOP_SPAN, Span, SpanType, Tracer, TracingContext
from stepflow.runtime.abort import AbortController
from stepflow.runtime.emitter import Emitter, EventName, WatchEventType, user_event
from stepflow.runtime.writer import StepWriter
from stepflow.schemas.execution import (
    EntryOutcome,
    ExecutionContext,
    ResumeDescriptor,
    RetryConfig,
    RunResult,
    WorkflowRunStatus,
)
from stepflow.schemas.snapshot import WorkflowSnapshot
from stepflow.schemas.step_result import (
    StepBailed,
    StepCanceled,
    StepFailure,
    StepResultBase,
    StepRunning,
    StepStatus,
    StepSuccess,
    StepSuspended,
    StepWaiting,
    as_canceled,
    step_output,
)
from stepflow.storage.snapshot_store import SnapshotPersister

CANCELED_MESSAGE = "Workflow run was canceled"


@dataclass
class RunState:
    """Mutable state of one run, threaded through every engine call."""

    workflow_id: str
    run_id: str
    input_data: Any
    serialized_step_graph: list[dict[str, Any]]
    emitter: Emitter
    abort_controller: AbortController
    output_stream: asyncio.Queue | None = None
    disable_scorers: bool = False
    run_counts: dict[str, int] = field(default_factory=dict)
    background_tasks: set[asyncio.Task] = field(default_factory=set)

    @property
    def aborted(self) -> bool:
        return self.abort_controller.signal.aborted

    def details(self, **extra: Any) -> dict[str, Any]:
        """Correlation fields for error details."""
        return {"workflow_id": self.workflow_id, "run_id": self.run_id, **extra}


class ExecutionEngine:
    """
    Executes workflow entry lists.

    Example:
        engine = ExecutionEngine(persister=InMemorySnapshotStore())
        result = await engine.execute(
            workflow_id="orders",
            run_id="run_1",
            graph=[StepEntry(validate), StepEntry(charge)],
            input={"amount": 10},
        )
        if result.status == "success":
            print(result.result)
    """

    def __init__(
        self,
        persister: SnapshotPersister | None = None,
        tracer: Tracer | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Initialize the engine.

        Args:
            persister: Receives a snapshot at every state change; None
                disables persistence
            tracer: Creates the root span of each run; None disables tracing
                unless the caller passes a tracing context to ``execute``
            config: Engine defaults (retry policy, foreach concurrency)
        """
        self.persister = persister
        self.tracer = tracer
        self.config = config or EngineConfig()
        self.logger = logging.getLogger(__name__)

    # === RUN ===

    async def execute(
        self,
        *,
        workflow_id: str,
        run_id: str,
        graph: ExecutionGraph | Sequence[StepFlowEntry],
        input: Any = None,
        resume: ResumeDescriptor | None = None,
        serialized_step_graph: list[dict[str, Any]] | None = None,
        retry_config: RetryConfig | None = None,
        abort_controller: AbortController | None = None,
        emitter: Emitter | None = None,
        tracing_context: TracingContext | None = None,
        output_stream: asyncio.Queue | None = None,
        disable_scorers: bool = False,
    ) -> RunResult:
        """
        Run a workflow to a terminal result.

        Args:
            workflow_id: Id of the workflow, carried into snapshots and logs
            run_id: Id of this run
            graph: The entry list (or an ``ExecutionGraph``)
            input: Workflow input, fed to the first entry
            resume: Set when continuing a suspended run
            serialized_step_graph: Stored in snapshots; derived from the
                graph when omitted
            retry_config: Run-wide retry defaults; engine config when omitted
            abort_controller: Cancellation token for the run
            emitter: Channel for progress events and user events
            tracing_context: Parent span for the run's root span
            output_stream: Queue receiving every chunk steps write
            disable_scorers: Skip step scorers for this run

        Returns:
            RunResult with status success, failed or suspended

        Raises:
            WorkflowError: WORKFLOW_EXECUTE_EMPTY_GRAPH when there are no
                entries, WORKFLOW_INVALID_GRAPH for a malformed graph and
                WORKFLOW_RUN_NOT_RESUMABLE for a resume path outside the graph
        """
        # Scoped to this call; the caller's log context is restored on return
        token = set_trace_context(workflow_id=workflow_id, run_id=run_id)
        try:
            return await self._execute_run(
                workflow_id=workflow_id,
                run_id=run_id,
                graph=graph,
                input=input,
                resume=resume,
                serialized_step_graph=serialized_step_graph,
                retry_config=retry_config,
                abort_controller=abort_controller,
                emitter=emitter,
                tracing_context=tracing_context,
                output_stream=output_stream,
                disable_scorers=disable_scorers,
            )
        finally:
            reset_trace_context(token)

    async def _execute_run(
        self,
        *,
        workflow_id: str,
        run_id: str,
        graph: ExecutionGraph | Sequence[StepFlowEntry],
        input: Any,
        resume: ResumeDescriptor | None,
        serialized_step_graph: list[dict[str, Any]] | None,
        retry_config: RetryConfig | None,
        abort_controller: AbortController | None,
        emitter: Emitter | None,
        tracing_context: TracingContext | None,
        output_stream: asyncio.Queue | None,
        disable_scorers: bool,
    ) -> RunResult:
        entries = list(graph.steps if isinstance(graph, ExecutionGraph) else graph)
        workflow_span = self._start_run_span(workflow_id, run_id, input, tracing_context)

        if not entries:
            error = WorkflowError(EMPTY_GRAPH, details={"workflow_id": workflow_id, "run_id": run_id})
            workflow_span.error(error)
            raise error

        problems = ExecutionGraph(id=workflow_id, steps=entries).validate()
        if problems:
            error = WorkflowError(
                INVALID_GRAPH,
                message="; ".join(problems),
                details={"workflow_id": workflow_id, "run_id": run_id, "problems": problems},
            )
            workflow_span.error(error)
            raise error

        run = RunState(
            workflow_id=workflow_id,
            run_id=run_id,
            input_data=input,
            serialized_step_graph=(
                serialized_step_graph
                if serialized_step_graph is not None
                else serialize_step_graph(entries)
            ),
            emitter=emitter or Emitter(run_id=run_id, max_history=self.config.emitter_history),
            abort_controller=abort_controller or AbortController(),
            output_stream=output_stream,
            disable_scorers=disable_scorers,
        )
        retry = retry_config or RetryConfig(
            attempts=self.config.retry_attempts, delay_ms=self.config.retry_delay_ms
        )

        start_idx = 0
        step_results: dict[str, StepResultBase] = {}
        if resume is not None:
            resume = resume.copy()
            step_results = dict(resume.step_results)
            if resume.resume_path:
                start_idx = resume.resume_path.pop(0)
            if not 0 <= start_idx < len(entries):
                error = WorkflowError(
                    RUN_NOT_RESUMABLE,
                    message=f"Resume path index {start_idx} is outside the workflow",
                    details=run.details(),
                )
                workflow_span.error(error)
                raise error
            self.logger.info(f"🔄 Resuming run {run_id} at entry {start_idx}")
        else:
            self.logger.info(f"🚀 Starting run {run_id} of {workflow_id}: {len(entries)} entries")

        await self._emit_v2(run, WatchEventType.WORKFLOW_START, {"run_id": run_id})

        run_tracing = TracingContext(workflow_span)
        outcome: EntryOutcome | None = None
        for i in range(start_idx, len(entries)):
            entry = entries[i]
            execution_context = ExecutionContext(
                workflow_id=workflow_id,
                run_id=run_id,
                execution_path=[i],
                suspended_paths={},
                retry_config=retry,
            )
            try:
                outcome = await self.execute_entry(
                    run=run,
                    entry=entry,
                    prev_entry=entries[i - 1] if i > 0 else None,
                    step_results=step_results,
                    resume=resume,
                    execution_context=execution_context,
                    tracing_context=run_tracing,
                )
            except Exception as e:
                error = normalize_error(
                    e,
                    ENGINE_STEP_DISPATCH_FAILED,
                    "Error executing step: ",
                    details=run.details(entry_index=i, entry_type=getattr(entry, "type", None)),
                )
                failure = StepFailure(error=format_error(error))
                return await self._finish(
                    run, workflow_span, step_results, failure, execution_context, error=error
                )

            if resume is not None:
                # The path only steers the entry it was recorded under
                resume.resume_path.clear()

            if outcome.result.status != StepStatus.SUCCESS:
                return await self._finish(
                    run, workflow_span, step_results, outcome.result, outcome.execution_context
                )

        assert outcome is not None
        return await self._finish(
            run, workflow_span, step_results, outcome.result, outcome.execution_context
        )

    def _start_run_span(
        self,
        workflow_id: str,
        run_id: str,
        input_data: Any,
        tracing_context: TracingContext | None,
    ) -> Span:
        attributes = {"workflow_id": workflow_id, "run_id": run_id}
        name = f"workflow run: '{workflow_id}'"
        if tracing_context is not None and tracing_context.current_span is not None:
            return tracing_context.child(SpanType.WORKFLOW_RUN, name, input_data, attributes)
        if self.tracer is not None:
            return self.tracer.start_span(SpanType.WORKFLOW_RUN, name, input_data, attributes)
        return NOOP_SPAN

    async def _finish(
        self,
        run: RunState,
        workflow_span: Span,
        step_results: dict[str, StepResultBase],
        last_result: StepResultBase,
        execution_context: ExecutionContext,
        error: WorkflowError | None = None,
    ) -> RunResult:
        """Format the terminal envelope, persist it and close the run span."""
        if run.background_tasks:
            await asyncio.gather(*list(run.background_tasks), return_exceptions=True)

        run_result = await self.fmt_return_value(run, step_results, last_result, error)

        snapshot_status = WorkflowRunStatus(run_result.status)
        if last_result.status == StepStatus.CANCELED:
            snapshot_status = WorkflowRunStatus.CANCELED

        await self.persist_step_update(
            run,
            step_results,
            execution_context,
            snapshot_status,
            result=run_result.result,
            error=run_result.error,
        )
        await self._emit_v2(
            run,
            WatchEventType.WORKFLOW_FINISH,
            {"run_id": run.run_id, "status": snapshot_status.value},
        )

        if run_result.status == WorkflowRunStatus.FAILED:
            workflow_span.error(run_result.error or "failed", {"status": snapshot_status.value})
            self.logger.error(f"✗ Run {run.run_id} {snapshot_status.value}")
        else:
            workflow_span.end(run_result.result, {"status": snapshot_status.value})
            self.logger.info(f"✓ Run {run.run_id} finished: {snapshot_status.value}")
        return run_result

    async def fmt_return_value(
        self,
        run: RunState,
        step_results: dict[str, StepResultBase],
        last_result: StepResultBase,
        error: WorkflowError | None = None,
    ) -> RunResult:
        """
        Build the terminal envelope from the last entry's result.

        success/bailed -> success with the last output, failed -> the error
        text, suspended -> one path per suspended step, canceled -> failed
        with the cancellation message. Emits a final ``watch`` event.
        """
        steps = dict(step_results)
        status = last_result.status
        watch_status: WorkflowRunStatus

        if status == StepStatus.CANCELED:
            envelope = RunResult(status=WorkflowRunStatus.FAILED, steps=steps, error=CANCELED_MESSAGE)
            watch_status = WorkflowRunStatus.CANCELED
        elif status in (StepStatus.SUCCESS, StepStatus.BAILED):
            envelope = RunResult(
                status=WorkflowRunStatus.SUCCESS, steps=steps, result=step_output(last_result)
            )
            watch_status = WorkflowRunStatus.SUCCESS
        elif status == StepStatus.SUSPENDED:
            envelope = RunResult(
                status=WorkflowRunStatus.SUSPENDED,
                steps=steps,
                suspended=self._suspended_step_paths(step_results),
            )
            watch_status = WorkflowRunStatus.SUSPENDED
        else:
            message = format_error(error) if error is not None else getattr(last_result, "error", None)
            envelope = RunResult(
                status=WorkflowRunStatus.FAILED,
                steps=steps,
                error=message or f"Run ended with status '{status}'",
            )
            watch_status = WorkflowRunStatus.FAILED

        await self._emit_watch(
            run, step_results, watch_status, result=envelope.result, error=envelope.error
        )
        return envelope

    @staticmethod
    def _suspended_step_paths(step_results: dict[str, StepResultBase]) -> list[list[str]]:
        paths: list[list[str]] = []
        for step_id, result in step_results.items():
            if result.status != StepStatus.SUSPENDED:
                continue
            nested: list[str] = []
            payload = result.suspend_payload
            if isinstance(payload, dict):
                meta = payload.get("__workflow_meta")
                if isinstance(meta, dict) and meta.get("path"):
                    nested = list(meta["path"])
            paths.append([step_id, *nested])
        return paths

    # === DISPATCH ===

    async def execute_entry(
        self,
        *,
        run: RunState,
        entry: StepFlowEntry,
        prev_entry: StepFlowEntry | None,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor | None,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
    ) -> EntryOutcome:
        """Run one entry of any type, record its result and persist a snapshot."""
        prev_output = self.get_step_output(step_results, prev_entry, run.input_data)

        result: StepResultBase
        if isinstance(entry, StepEntry):
            result = await self.execute_step(
                run, entry.step, step_results, execution_context, resume, prev_output, tracing_context
            )
        elif isinstance(entry, ParallelEntry):
            if resume is not None and resume.resume_path:
                result = await self._resume_parallel(
                    run,
                    entry,
                    prev_entry,
                    step_results,
                    resume,
                    execution_context,
                    tracing_context,
                    prev_output,
                )
            else:
                result = await self.execute_parallel(
                    run,
                    entry,
                    prev_entry,
                    step_results,
                    resume,
                    execution_context,
                    tracing_context,
                    prev_output,
                )
        elif isinstance(entry, ConditionalEntry):
            result = await self.execute_conditional(
                run,
                entry,
                prev_entry,
                step_results,
                resume,
                execution_context,
                tracing_context,
                prev_output,
            )
        elif isinstance(entry, LoopEntry):
            result = await self.execute_loop(
                run, entry, step_results, resume, execution_context, tracing_context, prev_output
            )
        elif isinstance(entry, ForeachEntry):
            result = await self.execute_foreach(
                run, entry, step_results, resume, execution_context, tracing_context, prev_output
            )
        elif isinstance(entry, (SleepEntry, SleepUntilEntry)):
            result = await self._execute_timed_entry(
                run, entry, step_results, execution_context, tracing_context, prev_output
            )
        elif isinstance(entry, WaitForEventEntry):
            result = await self.execute_wait_for_event(
                run, entry, step_results, execution_context, tracing_context, prev_output
            )
        else:
            raise TypeError(f"Unknown entry type: {type(entry).__name__}")

        if isinstance(entry, STEP_BEARING_ENTRIES):
            step_results[entry.step.id] = result

        if run.aborted:
            result = as_canceled(result)

        await self.persist_step_update(
            run, step_results, execution_context, self._snapshot_status(result)
        )
        return EntryOutcome(
            result=result, step_results=step_results, execution_context=execution_context
        )

    def get_step_output(
        self,
        step_results: dict[str, StepResultBase],
        entry: StepFlowEntry | None,
        input_data: Any,
    ) -> Any:
        """
        Input for the entry following ``entry``.

        The first entry gets the workflow input. Parallel and conditional
        blocks yield a dict of their children's outputs keyed by step id,
        with nested blocks merged in flat.
        """
        if entry is None:
            return input_data
        if isinstance(entry, STEP_BEARING_ENTRIES):
            return step_output(step_results.get(entry.step.id))
        if isinstance(entry, (SleepEntry, SleepUntilEntry)):
            return step_output(step_results.get(entry.id))
        if isinstance(entry, (ParallelEntry, ConditionalEntry)):
            outputs: dict[str, Any] = {}
            for child in entry.steps:
                if isinstance(child, STEP_BEARING_ENTRIES):
                    result = step_results.get(child.step.id)
                    if result is not None:
                        outputs[child.step.id] = step_output(result)
                elif isinstance(child, (ParallelEntry, ConditionalEntry)):
                    outputs.update(self.get_step_output(step_results, child, input_data))
            return outputs
        return None

    @staticmethod
    def _snapshot_status(result: StepResultBase) -> WorkflowRunStatus:
        if result.status in (StepStatus.SUCCESS, StepStatus.BAILED):
            return WorkflowRunStatus.RUNNING
        return WorkflowRunStatus(result.status)

    # === STEP ===

    async def execute_step(
        self,
        run: RunState,
        step: Step,
        step_results: dict[str, StepResultBase],
        execution_context: ExecutionContext,
        resume: ResumeDescriptor | None,
        prev_output: Any,
        tracing_context: TracingContext,
        skip_emits: bool = False,
    ) -> StepResultBase:
        """
        Run one step body with retries.

        Attempts are ``retries + 1`` where ``retries`` is the step's own
        setting, else the run's retry config. An attempt that calls
        ``suspend`` or ``bail``, or returns normally, ends the retry loop.
        """
        is_resumed = bool(resume is not None and resume.steps and resume.steps[0] == step.id)
        prior = step_results.get(step.id)
        now = datetime.now()

        base: dict[str, Any] = {"payload": prev_output, "started_at": now}
        if is_resumed:
            if prior is not None:
                base["started_at"] = prior.started_at or now
                base["suspend_payload"] = prior.suspend_payload
            base["resume_payload"] = resume.resume_payload
            base["resumed_at"] = now

        running = StepRunning(**base)
        span = tracing_context.child(
            SpanType.WORKFLOW_STEP,
            f"workflow step: '{step.id}'",
            input=prev_output,
            attributes={"step_id": step.id},
        )
        step_tracing = TracingContext(span)

        if not skip_emits:
            await self._emit_step_started(run, step.id, running, step_results)
        await self.persist_step_update(
            run, {**step_results, step.id: running}, execution_context, WorkflowRunStatus.RUNNING
        )

        self.logger.info(f"▶ Step {step.id}", extra={"step_id": step.id})

        retries = step.retries if step.retries is not None else execution_context.retry_config.attempts
        retries = max(0, retries)
        delay_ms = execution_context.retry_config.delay_ms

        result: StepResultBase = running
        error: WorkflowError | None = None
        for attempt in range(retries + 1):
            if attempt > 0:
                self.logger.warning(
                    f"   ↻ Retrying step {step.id} ({attempt}/{retries})",
                    extra={"step_id": step.id, "attempt": attempt},
                )
                if delay_ms:
                    await asyncio.sleep(delay_ms / 1000)

            control = StepControl()
            ctx = self._step_context(
                run,
                step,
                step_results,
                execution_context,
                input_data=prev_output,
                resume_data=resume.resume_payload if is_resumed else None,
                tracing_context=step_tracing,
                control=control,
            )

            started = time.perf_counter()
            try:
                output = await call_maybe_async(step.execute, ctx)
            except Exception as e:
                error = normalize_error(
                    e,
                    STEP_EXECUTION_FAILED,
                    f"Error executing step {step.id}: ",
                    details=run.details(step_id=step.id, attempt=attempt),
                )
                result = StepFailure(**base, error=format_error(error))
                continue

            latency_ms = int((time.perf_counter() - started) * 1000)
            error = None
            if control.suspended:
                result = StepSuspended(**{**base, "suspend_payload": control.suspend_payload})
            elif control.bailed:
                result = StepBailed(**base, output=control.bail_output)
            else:
                result = StepSuccess(**base, output=output)
                if step.scorers and not run.disable_scorers:
                    self._schedule_scorers(run, step, prev_output, output)

            self.logger.info(
                f"   ✓ Step {step.id}: {result.status}",
                extra={"step_id": step.id, "latency_ms": latency_ms, "status": result.status},
            )
            break

        if error is not None:
            self.logger.error(f"   ✗ Step {step.id} failed after {retries + 1} attempt(s)")

        if not skip_emits:
            await self._emit_step_finished(run, step.id, result, step_results)

        if isinstance(result, StepFailure):
            span.error(error or result.error or "failed", {"status": result.status})
        else:
            span.end(step_output(result), {"status": result.status})
        return result

    def _next_run_count(self, run: RunState, step_id: str) -> int:
        """0 the first time a step id executes in a run, then 1, 2, ..."""
        count = run.run_counts.get(step_id)
        count = 0 if count is None else count + 1
        run.run_counts[step_id] = count
        return count

    def _step_context(
        self,
        run: RunState,
        step: Step,
        step_results: dict[str, StepResultBase],
        execution_context: ExecutionContext,
        input_data: Any,
        resume_data: Any,
        tracing_context: TracingContext,
        control: StepControl,
    ) -> StepContext:
        def on_suspend() -> None:
            execution_context.suspended_paths[step.id] = list(execution_context.execution_path)

        return StepContext(
            input_data=input_data,
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            run_count=self._next_run_count(run, step.id),
            resume_data=resume_data,
            tracing_context=tracing_context,
            writer=StepWriter(
                run.emitter, run.run_id, step.id, uuid.uuid4().hex, run.output_stream
            ),
            abort_signal=run.abort_controller.signal,
            step_id=step.id,
            _init_data=run.input_data,
            _step_results=step_results,
            _control=control,
            _on_suspend=on_suspend,
            _on_abort=run.abort_controller.abort,
        )

    def _callback_context(
        self,
        run: RunState,
        input_data: Any,
        step_results: dict[str, StepResultBase],
        tracing_context: TracingContext,
    ) -> StepContext:
        """Context for conditions and dynamic sleeps: no run count, inert suspend/bail."""
        return StepContext(
            input_data=input_data,
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            run_count=-1,
            tracing_context=tracing_context,
            abort_signal=run.abort_controller.signal,
            _init_data=run.input_data,
            _step_results=step_results,
            _on_abort=run.abort_controller.abort,
        )

    # === SCORERS ===

    def _schedule_scorers(self, run: RunState, step: Step, input_data: Any, output: Any) -> None:
        """Score a step's output in the background; scores never affect the step."""
        task = asyncio.create_task(self._score_step(run, step, input_data, output))
        run.background_tasks.add(task)
        task.add_done_callback(run.background_tasks.discard)

    async def _score_step(self, run: RunState, step: Step, input_data: Any, output: Any) -> None:
        details = run.details(step_id=step.id)
        scorers = step.scorers
        if callable(scorers):
            try:
                scorers = await call_maybe_async(scorers)
            except Exception as e:
                normalize_error(
                    e, FAILED_TO_FETCH_SCORERS, f"Error fetching scorers for step {step.id}: ", details
                )
                return

        scorer_input = ScorerInput(
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            step_id=step.id,
            input=input_data,
            output=output,
        )

        async def run_scorer(scorer_id: str, scorer: Any) -> None:
            try:
                score = await call_maybe_async(scorer, scorer_input)
            except Exception as e:
                normalize_error(
                    e,
                    SCORER_FAILED,
                    f"Scorer {scorer_id} failed for step {step.id}: ",
                    {**details, "scorer_id": scorer_id},
                )
                return
            await self._emit_v2(
                run,
                WatchEventType.STEP_SCORE,
                {"id": step.id, "scorer_id": scorer_id, "score": score},
            )

        await asyncio.gather(*(run_scorer(sid, s) for sid, s in (scorers or {}).items()))

    # === PARALLEL ===

    async def _settle_all(self, awaitables: Sequence[Awaitable[Any]]) -> list[Any]:
        """
        Await every branch, then re-raise the first exception.

        Siblings of a branch that raised still run to completion, so none of
        them can persist a snapshot after the run's terminal one.
        """
        results = await asyncio.gather(*awaitables, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def execute_parallel(
        self,
        run: RunState,
        entry: ParallelEntry,
        prev_entry: StepFlowEntry | None,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor | None,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """Run every branch concurrently; all branches receive the block's input."""
        started_at = datetime.now()
        span = tracing_context.child(
            SpanType.WORKFLOW_PARALLEL,
            f"parallel: {len(entry.steps)} branches",
            input=prev_output,
            attributes={
                "branch_count": len(entry.steps),
                "parallel_steps": [entry_step_id(e) for e in entry.steps],
            },
        )
        self.logger.info(f"   ⑂ Fan-out: executing {len(entry.steps)} branches in parallel")

        try:
            outcomes = await self._settle_all(
                [
                    self.execute_entry(
                        run=run,
                        entry=child,
                        prev_entry=prev_entry,
                        step_results=step_results,
                        resume=resume,
                        execution_context=execution_context.child(i),
                        tracing_context=TracingContext(span),
                    )
                    for i, child in enumerate(entry.steps)
                ]
            )
        except Exception as e:
            span.error(e, {"status": StepStatus.FAILED})
            raise

        result = self._aggregate_branches(
            run, entry.steps, [o.result for o in outcomes], prev_output, started_at
        )
        self._close_span(span, result)
        return result

    async def _resume_parallel(
        self,
        run: RunState,
        entry: ParallelEntry,
        prev_entry: StepFlowEntry | None,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """Re-run only the branch named by the next resume path index."""
        return await self._resume_branch(
            run,
            entry.steps,
            prev_entry,
            step_results,
            resume,
            execution_context,
            tracing_context,
            prev_output,
        )

    async def _resume_branch(
        self,
        run: RunState,
        branches: Sequence[StepFlowEntry],
        prev_entry: StepFlowEntry | None,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """
        Re-run the branch at the next resume path index, then settle the
        block from the recorded results of its other branches.

        Siblings that are still suspended keep their entries in
        ``suspended_paths`` so each can be resumed in turn.
        """
        started_at = datetime.now()
        index = resume.resume_path.pop(0)
        if not 0 <= index < len(branches):
            raise WorkflowError(
                RUN_NOT_RESUMABLE,
                message=f"Resume path index {index} is outside a block of {len(branches)} branches",
                details=run.details(execution_path=execution_context.execution_path),
            )
        self.logger.info(f"🔄 Resuming branch {index} of {len(branches)}")

        await self.execute_entry(
            run=run,
            entry=branches[index],
            prev_entry=prev_entry,
            step_results=step_results,
            resume=resume,
            execution_context=execution_context.child(index),
            tracing_context=tracing_context,
        )

        settled: list[StepFlowEntry] = []
        results: list[StepResultBase] = []
        for i, child in enumerate(branches):
            result = self._recorded_result(
                run,
                child,
                step_results,
                resume,
                [*execution_context.execution_path, i],
                execution_context.suspended_paths,
            )
            if result is not None:
                settled.append(child)
                results.append(result)
        return self._aggregate_branches(run, settled, results, prev_output, started_at)

    def _recorded_result(
        self,
        run: RunState,
        entry: StepFlowEntry,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor,
        path: list[int],
        suspended_paths: dict[str, list[int]],
    ) -> StepResultBase | None:
        """Latest recorded result of a branch; re-registers any step still suspended under it."""
        if isinstance(entry, (ParallelEntry, ConditionalEntry)):
            children: list[StepFlowEntry] = []
            results: list[StepResultBase] = []
            for i, child in enumerate(entry.steps):
                result = self._recorded_result(
                    run, child, step_results, resume, [*path, i], suspended_paths
                )
                if result is not None:
                    children.append(child)
                    results.append(result)
            if not results:
                return None
            return self._aggregate_branches(run, children, results, None)

        step_id = entry_step_id(entry)
        result = step_results.get(step_id) if step_id is not None else None
        if result is not None and step_id is not None and result.status == StepStatus.SUSPENDED:
            suspended_paths[step_id] = list(resume.suspended_paths.get(step_id, path))
        return result

    def _aggregate_branches(
        self,
        run: RunState,
        entries: Sequence[StepFlowEntry],
        results: Sequence[StepResultBase],
        prev_output: Any,
        started_at: datetime | None = None,
    ) -> StepResultBase:
        """Combine branch results: failed > suspended > canceled > success."""
        base: dict[str, Any] = {"payload": prev_output, "started_at": started_at}

        for result in results:
            if result.status == StepStatus.FAILED:
                return StepFailure(**base, error=getattr(result, "error", None))

        for result in results:
            if result.status == StepStatus.SUSPENDED:
                return StepSuspended(**base, suspend_payload=result.suspend_payload)

        if run.aborted:
            return StepCanceled(**base)

        outputs: dict[str, Any] = {}
        for child, result in zip(entries, results):
            if isinstance(child, STEP_BEARING_ENTRIES):
                outputs[child.step.id] = step_output(result)
        return StepSuccess(**base, output=outputs)

    @staticmethod
    def _close_span(span: Span, result: StepResultBase) -> None:
        if result.status == StepStatus.FAILED:
            span.error(getattr(result, "error", None) or "failed", {"status": result.status})
        else:
            span.end(step_output(result), {"status": result.status})

    # === CONDITIONAL ===

    async def execute_conditional(
        self,
        run: RunState,
        entry: ConditionalEntry,
        prev_entry: StepFlowEntry | None,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor | None,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """
        Evaluate all conditions concurrently and run the selected branches.

        A condition that raises counts as false. Execution paths index the
        *selected* branches. When resuming, only the selected branch named by
        the resume path runs again; the others settle from their recorded
        results.
        """
        started_at = datetime.now()
        span = tracing_context.child(
            SpanType.WORKFLOW_CONDITIONAL,
            f"conditional: {len(entry.conditions)} conditions",
            input=prev_output,
            attributes={"condition_count": len(entry.conditions)},
        )

        verdicts = await self._settle_all(
            [
                self._evaluate_condition(run, condition, i, prev_output, step_results, span)
                for i, condition in enumerate(entry.conditions)
            ]
        )
        truthy = [i for i, ok in enumerate(verdicts) if ok]
        selected = [entry.steps[i] for i in truthy]
        span.update(
            attributes={
                "truthy_indexes": truthy,
                "selected_steps": [entry_step_id(e) for e in selected],
            }
        )
        self.logger.info(f"   ⑂ Conditional: branches {truthy} selected")

        try:
            if resume is not None and resume.resume_path:
                result = await self._resume_branch(
                    run,
                    selected,
                    prev_entry,
                    step_results,
                    resume,
                    execution_context,
                    TracingContext(span),
                    prev_output,
                )
            else:
                outcomes = await self._settle_all(
                    [
                        self.execute_entry(
                            run=run,
                            entry=child,
                            prev_entry=prev_entry,
                            step_results=step_results,
                            resume=resume,
                            execution_context=execution_context.child(position),
                            tracing_context=TracingContext(span),
                        )
                        for position, child in enumerate(selected)
                    ]
                )
                result = self._aggregate_branches(
                    run, selected, [o.result for o in outcomes], prev_output, started_at
                )
        except Exception as e:
            span.error(e, {"status": StepStatus.FAILED})
            raise

        self._close_span(span, result)
        return result

    async def _evaluate_condition(
        self,
        run: RunState,
        condition: Any,
        index: int,
        prev_output: Any,
        step_results: dict[str, StepResultBase],
        span: Span,
    ) -> bool:
        eval_span = span.create_child_span(
            type=SpanType.WORKFLOW_CONDITIONAL_EVAL,
            name=f"condition: '{index}'",
            input=prev_output,
            attributes={"condition_index": index},
        )
        ctx = self._callback_context(run, prev_output, step_results, TracingContext(eval_span))
        try:
            value = bool(await call_maybe_async(condition, ctx))
        except Exception as e:
            error = normalize_error(
                e,
                CONDITION_EVALUATION_FAILED,
                "Error evaluating condition: ",
                details=run.details(condition_index=index),
            )
            eval_span.error(error, {"result": False})
            return False
        eval_span.end(value, {"result": value})
        return value

    # === LOOP ===

    async def execute_loop(
        self,
        run: RunState,
        entry: LoopEntry,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor | None,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """
        Repeat a step: dowhile continues while the predicate holds, dountil
        until it does. The body always runs at least once.

        A predicate that raises stops the loop with the last body result.
        """
        span = tracing_context.child(
            SpanType.WORKFLOW_LOOP,
            f"loop: '{entry.loop_type.value}'",
            input=prev_output,
            attributes={"loop_type": entry.loop_type.value},
        )

        prior = step_results.get(entry.step.id)
        current_input = prior.payload if prior is not None and prior.payload is not None else prev_output
        current_resume = resume
        iteration = 0

        while True:
            result = await self.execute_step(
                run,
                entry.step,
                step_results,
                execution_context,
                current_resume,
                current_input,
                TracingContext(span),
            )
            if current_resume is not None and result.status != StepStatus.SUSPENDED:
                current_resume = None

            if result.status != StepStatus.SUCCESS:
                span.end(attributes={"total_iterations": iteration, "status": result.status})
                return result

            output = step_output(result)
            eval_span = span.create_child_span(
                type=SpanType.WORKFLOW_CONDITIONAL_EVAL,
                name=f"condition: '{entry.loop_type.value}'",
                input=output,
                attributes={"condition_index": iteration},
            )
            ctx = self._callback_context(run, output, step_results, TracingContext(eval_span))
            iteration += 1
            try:
                holds = bool(await call_maybe_async(entry.condition, ctx))
            except Exception as e:
                error = normalize_error(
                    e,
                    CONDITION_EVALUATION_FAILED,
                    f"Error evaluating loop condition of {entry.step.id}: ",
                    details=run.details(step_id=entry.step.id, iteration=iteration),
                )
                eval_span.error(error, {"result": False})
                break
            eval_span.end(holds, {"result": holds})

            current_input = output
            if entry.loop_type == LoopType.DOWHILE and not holds:
                break
            if entry.loop_type == LoopType.DOUNTIL and holds:
                break

        self.logger.info(f"   ↺ Loop {entry.step.id} finished after {iteration} iteration(s)")
        span.end(step_output(result), {"total_iterations": iteration, "status": result.status})
        return result

    # === FOREACH ===

    async def execute_foreach(
        self,
        run: RunState,
        entry: ForeachEntry,
        step_results: dict[str, StepResultBase],
        resume: ResumeDescriptor | None,
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """
        Run the step once per element of the previous output, in batches of
        ``concurrency``. The first non-success item result ends the entry;
        later batches are never started. Outputs keep element order.
        """
        step = entry.step
        concurrency = entry.concurrency or self.config.default_foreach_concurrency
        concurrency = max(1, concurrency)
        started_at = datetime.now()
        running = StepRunning(payload=prev_output, started_at=started_at)

        span = tracing_context.child(
            SpanType.WORKFLOW_LOOP,
            "loop: 'foreach'",
            input=prev_output,
            attributes={"loop_type": "foreach", "concurrency": concurrency},
        )
        await self._emit_step_started(run, step.id, running, step_results)

        if not isinstance(prev_output, (list, tuple)):
            error = WorkflowError(
                STEP_EXECUTION_FAILED,
                message=f"foreach step {step.id} expects a list input, got {type(prev_output).__name__}",
                details=run.details(step_id=step.id),
            )
            result: StepResultBase = StepFailure(
                payload=prev_output, started_at=started_at, error=format_error(error)
            )
            await self._emit_step_finished(run, step.id, result, step_results)
            span.error(error, {"status": "failed"})
            return result

        items = list(prev_output)
        outputs: list[Any] = []
        self.logger.info(f"   ⟳ Foreach {step.id}: {len(items)} item(s), concurrency {concurrency}")

        for offset in range(0, len(items), concurrency):
            batch = items[offset : offset + concurrency]
            batch_results = await self._settle_all(
                [
                    self.execute_step(
                        run,
                        step,
                        step_results,
                        execution_context,
                        resume,
                        item,
                        TracingContext(span),
                        skip_emits=True,
                    )
                    for item in batch
                ]
            )
            for item_result in batch_results:
                if item_result.status != StepStatus.SUCCESS:
                    await self._emit_step_finished(run, step.id, item_result, step_results)
                    self._close_span(span, item_result)
                    return item_result
                outputs.append(step_output(item_result))

        result = StepSuccess(payload=prev_output, started_at=started_at, output=outputs)
        await self._emit_step_finished(run, step.id, result, step_results)
        span.end(outputs, {"status": result.status, "item_count": len(items)})
        return result

    # === TIMED WAITS ===

    async def _execute_timed_entry(
        self,
        run: RunState,
        entry: SleepEntry | SleepUntilEntry,
        step_results: dict[str, StepResultBase],
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """Wrap a sleep: announce waiting, sleep, then record a pass-through result."""
        started_at = datetime.now()
        waiting = StepWaiting(payload=prev_output, started_at=started_at)
        await self._emit_step_waiting(run, entry.id, waiting, step_results)
        await self.persist_step_update(
            run,
            {**step_results, entry.id: waiting},
            execution_context,
            WorkflowRunStatus.WAITING,
            waiting_paths={entry.id: execution_context.execution_path},
        )

        if isinstance(entry, SleepEntry):
            await self.execute_sleep(run, entry, step_results, tracing_context, prev_output)
        else:
            await self.execute_sleep_until(run, entry, step_results, tracing_context, prev_output)

        await self.persist_step_update(
            run, step_results, execution_context, WorkflowRunStatus.RUNNING
        )

        result = StepSuccess(payload=prev_output, started_at=started_at, output=prev_output)
        step_results[entry.id] = result
        await self._emit_step_finished(run, entry.id, result, step_results)
        return result

    async def execute_sleep(
        self,
        run: RunState,
        entry: SleepEntry,
        step_results: dict[str, StepResultBase],
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> None:
        """Sleep for a fixed duration or one computed by ``entry.fn`` (milliseconds)."""
        duration_ms = entry.duration_ms
        if entry.fn is not None:
            ctx = self._callback_context(run, prev_output, step_results, tracing_context)
            duration_ms = await call_maybe_async(entry.fn, ctx)
        duration_ms = max(0.0, float(duration_ms or 0))

        span = tracing_context.child(
            SpanType.WORKFLOW_SLEEP,
            f"sleep: {duration_ms}ms",
            input={"duration_ms": duration_ms},
            attributes={
                "duration_ms": duration_ms,
                "sleep_type": "dynamic" if entry.fn is not None else "fixed",
            },
        )
        started = time.perf_counter()
        await asyncio.sleep(duration_ms / 1000)
        span.end(attributes={"actual_duration_ms": int((time.perf_counter() - started) * 1000)})

    async def execute_sleep_until(
        self,
        run: RunState,
        entry: SleepUntilEntry,
        step_results: dict[str, StepResultBase],
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> None:
        """Sleep until ``entry.date`` or the datetime ``entry.fn`` returns; past dates return at once."""
        target = entry.date
        if entry.fn is not None:
            ctx = self._callback_context(run, prev_output, step_results, tracing_context)
            target = await call_maybe_async(entry.fn, ctx)
        if not isinstance(target, datetime):
            raise TypeError(f"sleepUntil {entry.id} needs a datetime, got {type(target).__name__}")

        delay_s = max(0.0, (target - datetime.now(tz=target.tzinfo)).total_seconds())
        span = tracing_context.child(
            SpanType.WORKFLOW_SLEEP,
            f"sleepUntil: {target.isoformat()}",
            input={"until": target.isoformat()},
            attributes={
                "until": target.isoformat(),
                "duration_ms": int(delay_s * 1000),
                "sleep_type": "dynamic" if entry.fn is not None else "fixed",
            },
        )
        await asyncio.sleep(delay_s)
        span.end()

    async def execute_wait_for_event(
        self,
        run: RunState,
        entry: WaitForEventEntry,
        step_results: dict[str, StepResultBase],
        execution_context: ExecutionContext,
        tracing_context: TracingContext,
        prev_output: Any,
    ) -> StepResultBase:
        """
        Block until the named user event arrives, then run the step with the
        event data as its resume data. A timeout makes the entry fail.
        """
        step = entry.step
        started_at = datetime.now()
        waiting = StepWaiting(payload=prev_output, started_at=started_at)
        await self._emit_step_waiting(run, step.id, waiting, step_results)
        await self.persist_step_update(
            run,
            {**step_results, step.id: waiting},
            execution_context,
            WorkflowRunStatus.WAITING,
            waiting_paths={step.id: execution_context.execution_path},
        )

        try:
            event_data = await self._wait_for_user_event(run, entry, tracing_context)
        except WorkflowError as e:
            result = StepFailure(payload=prev_output, started_at=started_at, error=format_error(e))
            await self._emit_step_finished(run, step.id, result, step_results)
            return result

        return await self.execute_step(
            run,
            step,
            step_results,
            execution_context,
            ResumeDescriptor(steps=[step.id], resume_payload=event_data),
            prev_output,
            tracing_context,
        )

    async def _wait_for_user_event(
        self,
        run: RunState,
        entry: WaitForEventEntry,
        tracing_context: TracingContext,
    ) -> Any:
        span = tracing_context.child(
            SpanType.WORKFLOW_WAIT_EVENT,
            f"wait for event: '{entry.event}'",
            attributes={"event_name": entry.event, "timeout_ms": entry.timeout_ms},
        )
        self.logger.info(f"   ⏸ Waiting for event '{entry.event}'")

        started = time.perf_counter()
        timeout = entry.timeout_ms / 1000 if entry.timeout_ms is not None else None
        event = await run.emitter.wait_for(user_event(entry.event), timeout=timeout)
        waited_ms = int((time.perf_counter() - started) * 1000)

        if event is None:
            error = WorkflowError(
                WAIT_FOR_EVENT_TIMEOUT,
                details=run.details(event=entry.event, timeout_ms=entry.timeout_ms),
            )
            self.logger.warning(f"   ⏱ Timed out waiting for event '{entry.event}'")
            span.error(error, {"event_received": False, "wait_duration_ms": waited_ms})
            raise error

        span.end(event.data, {"event_received": True, "wait_duration_ms": waited_ms})
        return event.data

    # === SNAPSHOTS & EVENTS ===

    async def persist_step_update(
        self,
        run: RunState,
        step_results: dict[str, StepResultBase],
        execution_context: ExecutionContext,
        workflow_status: WorkflowRunStatus,
        result: Any = None,
        error: str | None = None,
        waiting_paths: dict[str, list[int]] | None = None,
    ) -> None:
        """Hand the current run state to the persister, if there is one."""
        if self.persister is None:
            return
        snapshot = WorkflowSnapshot.create(
            workflow_id=run.workflow_id,
            run_id=run.run_id,
            status=workflow_status,
            step_results=step_results,
            input=run.input_data,
            serialized_step_graph=run.serialized_step_graph,
            suspended_paths=execution_context.suspended_paths,
            waiting_paths=waiting_paths,
            result=result,
            error=error,
        )
        await self.persister.persist_snapshot(snapshot)

    @staticmethod
    def _dump(result: StepResultBase) -> dict[str, Any]:
        return result.model_dump(exclude_none=True)

    async def _emit_v2(self, run: RunState, type: WatchEventType, payload: dict[str, Any]) -> None:
        await run.emitter.emit(EventName.WATCH_V2, {"type": type.value, "payload": payload})

    async def _emit_watch(
        self,
        run: RunState,
        step_results: dict[str, StepResultBase],
        status: WorkflowRunStatus,
        current_step: dict[str, Any] | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        await run.emitter.emit(
            EventName.WATCH,
            {
                "type": "watch",
                "payload": {
                    "current_step": current_step,
                    "workflow_state": {
                        "status": status.value,
                        "steps": {k: self._dump(v) for k, v in step_results.items()},
                        "result": result,
                        "error": error,
                    },
                },
            },
        )

    async def _emit_step_started(
        self,
        run: RunState,
        step_id: str,
        running: StepResultBase,
        step_results: dict[str, StepResultBase],
    ) -> None:
        current = {"id": step_id, **self._dump(running)}
        await self._emit_watch(
            run, {**step_results, step_id: running}, WorkflowRunStatus.RUNNING, current_step=current
        )
        await self._emit_v2(run, WatchEventType.STEP_START, current)

    async def _emit_step_waiting(
        self,
        run: RunState,
        step_id: str,
        waiting: StepResultBase,
        step_results: dict[str, StepResultBase],
    ) -> None:
        current = {"id": step_id, **self._dump(waiting)}
        await self._emit_watch(
            run, {**step_results, step_id: waiting}, WorkflowRunStatus.WAITING, current_step=current
        )
        await self._emit_v2(run, WatchEventType.STEP_WAITING, current)

    async def _emit_step_finished(
        self,
        run: RunState,
        step_id: str,
        result: StepResultBase,
        step_results: dict[str, StepResultBase],
    ) -> None:
        current = {"id": step_id, **self._dump(result)}
        await self._emit_watch(
            run, {**step_results, step_id: result}, WorkflowRunStatus.RUNNING, current_step=current
        )
        if result.status == StepStatus.SUSPENDED:
            await self._emit_v2(run, WatchEventType.STEP_SUSPENDED, current)
        else:
            await self._emit_v2(run, WatchEventType.STEP_RESULT, current)
            await self._emit_v2(run, WatchEventType.STEP_FINISH, {"id": step_id, "metadata": {}})
