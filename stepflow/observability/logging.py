"""
Structured logging with automatic run context propagation.

Key Features:
- ContextVar-based propagation: async-safe, so concurrent runs on one
  event loop never see each other's ids
- Dual output modes: JSON for production, human-readable for development
- Correlation ids: workflow_id/run_id follow every log line of a run,
  including lines emitted from inside user step bodies

Architecture:
    ExecutionEngine.execute() -> sets workflow_id, run_id once
        | (automatic propagation via ContextVar)
    ExecutionEngine.execute_step() -> step body runs inside that context
        | (automatic propagation)
    User code -> logger.info("message") -> gets the run context
"""

import json
import logging
import os
import re
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

from stepflow.config import get_log_format, get_log_level

trace_context: ContextVar[dict[str, Any] | None] = ContextVar(
    "stepflow_trace_context", default=None
)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# Extra record attributes copied into JSON output when present
_EXTRA_FIELDS = ("event", "step_id", "latency_ms", "attempt", "status")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces one machine-parseable object per line with the standard fields
    (timestamp, level, logger, message), the current run context and any
    of the known extras passed via ``extra=``.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line logs with a run context prefix, for local debugging."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        workflow_id = context.get("workflow_id", "")
        run_id = context.get("run_id", "")

        prefix_parts = []
        if workflow_id:
            prefix_parts.append(f"wf:{workflow_id}")
        if run_id:
            prefix_parts.append(f"run:{run_id[-8:]}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        step = ""
        step_id = getattr(record, "step_id", None)
        if step_id is not None:
            step = f" (step={step_id})"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{step}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    level: str | None = None,
    format: str | None = None,  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application.

    Call once at startup (entry point or test fixture).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); defaults to
            LOG_LEVEL or the config file
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human); defaults to LOG_FORMAT or the
            config file
    """
    level = level or get_log_level()
    format = format or get_log_format()
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> Token:
    """
    Merge fields into the trace context of the current execution.

    Called by the engine at the start of a run (workflow_id, run_id).
    The ContextVar is copied into every task spawned afterwards, so
    parallel branches inherit it automatically.

    Returns:
        Token for ``reset_trace_context``, restoring the previous context
    """
    current = trace_context.get() or {}
    return trace_context.set({**current, **kwargs})


def reset_trace_context(token: Token) -> None:
    """Restore the trace context that was current before ``set_trace_context``."""
    trace_context.reset(token)


def get_trace_context() -> dict[str, Any]:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear the trace context (test cleanup, or a fresh top-level run)."""
    trace_context.set(None)
