"""
Workflow and Run handles.

``Workflow`` binds an entry list to an engine and a snapshot store.
``Run`` is one execution of it: start it, watch it, send it events,
cancel it, and resume it after a step suspended.

Example:
    workflow = Workflow(id="approval", steps=[StepEntry(draft), StepEntry(review)])
    run = workflow.create_run()
    result = await run.start({"doc": "..."})
    if result.status == "suspended":
        result = await run.resume("review", {"approved": True})
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from typing import Any

from stepflow.config import EngineConfig
from stepflow.errors import RUN_NOT_RESUMABLE, WorkflowError
from stepflow.graph.entries import ExecutionGraph, StepFlowEntry, serialize_step_graph
from stepflow.graph.step import Step
from stepflow.observability.tracing import Tracer, TracingContext
from stepflow.runtime.abort import AbortController
from stepflow.runtime.emitter import Emitter, EventHandler, EventName, user_event
from stepflow.runtime.engine import ExecutionEngine
from stepflow.schemas.execution import ResumeDescriptor, RetryConfig, RunResult
from stepflow.schemas.step_result import StepStatus
from stepflow.storage.snapshot_store import FileSnapshotStore, InMemorySnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)


class Workflow:
    """A named, validated entry list plus the collaborators to run it."""

    def __init__(
        self,
        id: str,
        steps: Sequence[StepFlowEntry],
        retry_config: RetryConfig | None = None,
        store: SnapshotStore | None = None,
        engine: ExecutionEngine | None = None,
        tracer: Tracer | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Args:
            id: Workflow id
            steps: Top-level entries, run in order
            retry_config: Run-wide retry defaults
            store: Snapshot store; a FileSnapshotStore under the configured
                snapshot_dir when set, else in memory
            engine: Engine to run on; one is built around ``store`` if omitted
            tracer: Tracer for the engine built here
            config: Engine defaults
        """
        self.id = id
        self.graph = ExecutionGraph(id=id, steps=list(steps))
        self.config = config or EngineConfig()
        self.retry_config = retry_config

        if store is None:
            if self.config.snapshot_dir is not None:
                store = FileSnapshotStore(self.config.snapshot_dir)
            else:
                store = InMemorySnapshotStore()
        self.store = store
        self.engine = engine or ExecutionEngine(persister=store, tracer=tracer, config=self.config)
        self.serialized_step_graph = serialize_step_graph(self.graph.steps)

    def validate(self) -> list[str]:
        return self.graph.validate()

    def create_run(self, run_id: str | None = None) -> "Run":
        return Run(self, run_id or uuid.uuid4().hex)

    async def list_runs(self) -> list[str]:
        return await self.store.list_runs(self.id)


class Run:
    """One execution of a workflow."""

    def __init__(self, workflow: Workflow, run_id: str):
        self.workflow = workflow
        self.run_id = run_id
        self.emitter = Emitter(run_id=run_id, max_history=workflow.config.emitter_history)
        self.abort_controller = AbortController()

    async def start(
        self,
        input: Any = None,
        tracing_context: TracingContext | None = None,
        output_stream: asyncio.Queue | None = None,
        disable_scorers: bool = False,
    ) -> RunResult:
        """Run the workflow from its first entry."""
        return await self.workflow.engine.execute(
            workflow_id=self.workflow.id,
            run_id=self.run_id,
            graph=self.workflow.graph,
            input=input,
            serialized_step_graph=self.workflow.serialized_step_graph,
            retry_config=self.workflow.retry_config,
            abort_controller=self.abort_controller,
            emitter=self.emitter,
            tracing_context=tracing_context,
            output_stream=output_stream,
            disable_scorers=disable_scorers,
        )

    async def resume(
        self,
        step: str | Step | Sequence[str],
        resume_data: Any = None,
        tracing_context: TracingContext | None = None,
        output_stream: asyncio.Queue | None = None,
    ) -> RunResult:
        """
        Continue a suspended run at ``step`` with ``resume_data``.

        The latest snapshot supplies the earlier step results, the original
        input and the positional path of the suspended step.

        Raises:
            WorkflowError: WORKFLOW_RUN_NOT_RESUMABLE if the run has no
                snapshot or the step is not suspended
        """
        if isinstance(step, Step):
            step_ids = [step.id]
        elif isinstance(step, str):
            step_ids = [step]
        else:
            step_ids = list(step)
        details = {"workflow_id": self.workflow.id, "run_id": self.run_id, "steps": step_ids}

        snapshot = await self.workflow.store.load_snapshot(self.workflow.id, self.run_id)
        if snapshot is None:
            raise WorkflowError(
                RUN_NOT_RESUMABLE, message=f"No snapshot found for run {self.run_id}", details=details
            )

        target = step_ids[0] if step_ids else None
        previous = snapshot.context.get(target) if target else None
        if previous is None or previous.status != StepStatus.SUSPENDED:
            raise WorkflowError(
                RUN_NOT_RESUMABLE,
                message=f"Step {target!r} is not suspended in run {self.run_id}",
                details=details,
            )
        path = snapshot.suspended_paths.get(target)
        if path is None:
            raise WorkflowError(
                RUN_NOT_RESUMABLE,
                message=f"No suspended path recorded for step {target!r}",
                details=details,
            )

        logger.info(f"Resuming run {self.run_id} at step {target} (path {path})")
        # A fresh controller, since a canceled run cannot be resumed
        self.abort_controller = AbortController()
        return await self.workflow.engine.execute(
            workflow_id=self.workflow.id,
            run_id=self.run_id,
            graph=self.workflow.graph,
            input=snapshot.input,
            resume=ResumeDescriptor(
                steps=step_ids,
                step_results=dict(snapshot.context),
                resume_payload=resume_data,
                resume_path=list(path),
                suspended_paths=dict(snapshot.suspended_paths),
            ),
            serialized_step_graph=self.workflow.serialized_step_graph,
            retry_config=self.workflow.retry_config,
            abort_controller=self.abort_controller,
            emitter=self.emitter,
            tracing_context=tracing_context,
            output_stream=output_stream,
        )

    async def send_event(self, event: str, data: Any = None) -> None:
        """Deliver ``data`` to a waitForEvent entry listening for ``event``."""
        await self.emitter.emit(user_event(event), data)

    def cancel(self, reason: Any = None) -> None:
        """Fire the abort signal; the run ends as canceled after its current entry."""
        self.abort_controller.abort(reason)

    def watch(
        self,
        callback: EventHandler,
        kind: str = "watch",
    ) -> Callable[[], None]:
        """
        Subscribe to progress events.

        Args:
            callback: Called with each ``WorkflowEvent``
            kind: "watch" for whole-state snapshots, "watch-v2" for typed
                step events

        Returns:
            A callable that removes the subscription
        """
        channel = EventName.WATCH_V2 if kind in ("watch-v2", "v2") else EventName.WATCH
        sub_id = self.emitter.on(channel, callback)

        def unwatch() -> None:
            self.emitter.off(sub_id)

        return unwatch
