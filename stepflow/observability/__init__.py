"""
Observability for workflow runs.

- Run context propagation via ContextVar (every log line of a run carries
  its workflow_id/run_id)
- Structured JSON logging for production, human-readable for development
- The span protocol the engine drives, plus no-op and in-memory tracers
"""

from stepflow.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    reset_trace_context,
    set_trace_context,
)
from stepflow.observability.tracing import (
    NOOP_SPAN,
    NoOpSpan,
    RecordedSpan,
    RecordingTracer,
    Span,
    SpanType,
    Tracer,
    TracingContext,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "reset_trace_context",
    "clear_trace_context",
    "Span",
    "SpanType",
    "Tracer",
    "TracingContext",
    "NoOpSpan",
    "NOOP_SPAN",
    "RecordedSpan",
    "RecordingTracer",
]
