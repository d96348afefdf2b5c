"""
Tracing capability consumed by the engine.

The engine never stores or exports spans itself. It only needs something
that can open a child span per control-flow construct, update it, and
close it (normally or with an error). Real backends implement the
``Span``/``Tracer`` protocols; ``NoOpSpan`` is used when tracing is off and
``RecordingTracer`` keeps everything in memory for tests and debugging.

Span and trace ids follow the OTel shapes (16 and 32 hex chars) so a
recorded tree can be exported later without a schema change.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class SpanType(StrEnum):
    """Kinds of spans the engine creates."""

    WORKFLOW_RUN = "workflow_run"
    WORKFLOW_STEP = "workflow_step"
    WORKFLOW_CONDITIONAL = "workflow_conditional"
    WORKFLOW_CONDITIONAL_EVAL = "workflow_conditional_eval"
    WORKFLOW_PARALLEL = "workflow_parallel"
    WORKFLOW_LOOP = "workflow_loop"
    WORKFLOW_SLEEP = "workflow_sleep"
    WORKFLOW_WAIT_EVENT = "workflow_wait_event"


@runtime_checkable
class Span(Protocol):
    """One traced operation."""

    def create_child_span(
        self,
        type: SpanType,
        name: str,
        input: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> Span: ...

    def update(
        self,
        output: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    def end(
        self,
        output: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    def error(
        self,
        error: BaseException | str,
        attributes: dict[str, Any] | None = None,
    ) -> None: ...


@runtime_checkable
class Tracer(Protocol):
    """Creates root spans."""

    def start_span(
        self,
        type: SpanType,
        name: str,
        input: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> Span: ...


@dataclass
class TracingContext:
    """Span context threaded explicitly through every engine call."""

    current_span: Span | None = None

    def child(
        self,
        type: SpanType,
        name: str,
        input: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> Span:
        """Open a child of the current span, or a no-op span when there is none."""
        if self.current_span is None:
            return NOOP_SPAN
        return self.current_span.create_child_span(
            type=type, name=name, input=input, attributes=attributes
        )


class NoOpSpan:
    """Span that records nothing."""

    def create_child_span(
        self,
        type: SpanType,
        name: str,
        input: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> NoOpSpan:
        return self

    def update(self, output: Any = None, attributes: dict[str, Any] | None = None) -> None:
        return None

    def end(self, output: Any = None, attributes: dict[str, Any] | None = None) -> None:
        return None

    def error(
        self,
        error: BaseException | str,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        return None


NOOP_SPAN = NoOpSpan()


@dataclass
class RecordedSpan:
    """A span kept in memory by ``RecordingTracer``."""

    tracer: RecordingTracer = field(repr=False)
    type: SpanType
    name: str
    trace_id: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_span_id: str = ""
    input: Any = None
    output: Any = None
    attributes: dict[str, Any] = field(default_factory=dict)
    error_info: str | None = None
    status: str = "running"  # running | ended | error
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: datetime | None = None

    def create_child_span(
        self,
        type: SpanType,
        name: str,
        input: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> RecordedSpan:
        return self.tracer._open(
            type=type,
            name=name,
            input=input,
            attributes=attributes,
            trace_id=self.trace_id,
            parent_span_id=self.span_id,
        )

    def update(self, output: Any = None, attributes: dict[str, Any] | None = None) -> None:
        if output is not None:
            self.output = output
        if attributes:
            self.attributes.update(attributes)

    def end(self, output: Any = None, attributes: dict[str, Any] | None = None) -> None:
        # First close wins; later end/error calls on a closed span are ignored
        if self.ended_at is not None:
            return
        self.update(output=output, attributes=attributes)
        self.status = "ended"
        self.ended_at = datetime.now()

    def error(
        self,
        error: BaseException | str,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        if self.ended_at is not None:
            return
        self.update(attributes=attributes)
        self.error_info = str(error)
        self.status = "error"
        self.ended_at = datetime.now()

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class RecordingTracer:
    """
    In-memory tracer.

    Example:
        tracer = RecordingTracer()
        engine = ExecutionEngine(tracer=tracer)
        await engine.execute(...)
        steps = tracer.spans_by_type(SpanType.WORKFLOW_STEP)
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []
        self._lock = threading.Lock()

    def start_span(
        self,
        type: SpanType,
        name: str,
        input: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> RecordedSpan:
        return self._open(
            type=type,
            name=name,
            input=input,
            attributes=attributes,
            trace_id=uuid.uuid4().hex,
            parent_span_id="",
        )

    def _open(
        self,
        type: SpanType,
        name: str,
        input: Any,
        attributes: dict[str, Any] | None,
        trace_id: str,
        parent_span_id: str,
    ) -> RecordedSpan:
        span = RecordedSpan(
            tracer=self,
            type=type,
            name=name,
            trace_id=trace_id,
            parent_span_id=parent_span_id,
            input=input,
            attributes=dict(attributes or {}),
        )
        with self._lock:
            self.spans.append(span)
        return span

    def spans_by_type(self, type: SpanType) -> list[RecordedSpan]:
        return [s for s in self.spans if s.type == type]

    def children_of(self, span: RecordedSpan) -> list[RecordedSpan]:
        return [s for s in self.spans if s.parent_span_id == span.span_id]

    def open_spans(self) -> list[RecordedSpan]:
        return [s for s in self.spans if s.is_open]
