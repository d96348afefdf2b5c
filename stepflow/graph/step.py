"""
Step - The unit of user work in a workflow.

A step is an id plus an async (or plain) callable taking a ``StepContext``.
The context gives the body its input, resume data and run metadata, and
the control primitives it may call: ``suspend``, ``bail`` and ``abort``.

Example:
    async def charge(ctx: StepContext):
        order = ctx.input_data
        if order["amount"] > 1000 and ctx.resume_data is None:
            return await ctx.suspend({"reason": "needs approval"})
        return {"charged": order["amount"]}

    charge_step = Step(id="charge", execute=charge, retries=2)
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stepflow.observability.tracing import TracingContext

if TYPE_CHECKING:
    from stepflow.runtime.abort import AbortSignal
    from stepflow.runtime.writer import StepWriter
    from stepflow.schemas.step_result import StepResultBase


@dataclass
class ScorerInput:
    """What a scorer sees after a step has produced its output."""

    run_id: str
    workflow_id: str
    step_id: str
    input: Any
    output: Any


Scorer = Callable[[ScorerInput], Any]
ScorerSource = dict[str, Scorer] | Callable[[], dict[str, Scorer] | Awaitable[dict[str, Scorer]]]


@dataclass(frozen=True)
class Step:
    """
    A user step.

    Attributes:
        id: Unique id within the workflow; results are keyed by it
        execute: Body, called with a ``StepContext``; may be sync or async
        description: Free text, carried into the serialized graph
        retries: Extra attempts on failure; overrides the run-wide default
        scorers: Quality scorers run after the step succeeds, either a
            mapping of name to scorer or a (possibly async) callable that
            returns one
    """

    id: str
    execute: Callable[[StepContext], Any]
    description: str = ""
    retries: int | None = None
    scorers: ScorerSource | None = None

    def __repr__(self) -> str:
        return f"Step(id={self.id!r})"


class StepControl:
    """Records which control primitive a step body invoked."""

    def __init__(self) -> None:
        self.suspended = False
        self.suspend_payload: Any = None
        self.bailed = False
        self.bail_output: Any = None


@dataclass
class StepContext:
    """
    Everything a step body (or a condition/sleep callback) can see.

    Callback contexts used for conditions and dynamic sleeps have
    ``run_count`` of -1 and inert ``suspend``/``bail``.
    """

    input_data: Any
    run_id: str
    workflow_id: str
    run_count: int = 0
    resume_data: Any = None
    tracing_context: TracingContext = field(default_factory=TracingContext)
    writer: StepWriter | None = None
    abort_signal: AbortSignal | None = None
    step_id: str | None = None

    _init_data: Any = field(default=None, repr=False)
    _step_results: dict[str, StepResultBase] = field(default_factory=dict, repr=False)
    _control: StepControl | None = field(default=None, repr=False)
    _on_suspend: Callable[[], None] | None = field(default=None, repr=False)
    _on_abort: Callable[[], None] | None = field(default=None, repr=False)

    def get_init_data(self) -> Any:
        """The workflow's original input."""
        return self._init_data

    def get_step_result(self, step: Step | str) -> Any:
        """
        Output of an earlier step, or None if it has not produced one.

        Only successful results expose an output.
        """
        step_id = step if isinstance(step, str) else step.id
        result = self._step_results.get(step_id)
        if result is None or result.status != "success":
            return None
        return getattr(result, "output", None)

    async def suspend(self, payload: Any = None) -> None:
        """Pause the run at this step until it is resumed."""
        if self._control is None:
            return None
        self._control.suspended = True
        self._control.suspend_payload = payload
        if self._on_suspend is not None:
            self._on_suspend()
        return None

    def bail(self, output: Any = None) -> None:
        """End the whole run successfully with ``output`` once this step returns."""
        if self._control is None:
            return
        self._control.bailed = True
        self._control.bail_output = output

    def abort(self) -> None:
        """Fire the run's abort signal."""
        if self._on_abort is not None:
            self._on_abort()


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result if it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
