"""
Error taxonomy for workflow execution.

Every error the engine surfaces carries a stable identifier, a domain tag
and a category so consumers can tell caller mistakes (USER) apart from
engine defects (SYSTEM) without parsing messages.
"""

import logging
import traceback
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorDomain(StrEnum):
    """Subsystem an error originated in."""

    WORKFLOW = "workflow"
    STORAGE = "storage"


class ErrorCategory(StrEnum):
    """Who is responsible for an error."""

    USER = "user"
    SYSTEM = "system"
    THIRD_PARTY = "third_party"


@dataclass(frozen=True)
class ErrorDefinition:
    """Static description of one error kind."""

    id: str
    domain: ErrorDomain = ErrorDomain.WORKFLOW
    category: ErrorCategory = ErrorCategory.USER
    text: str = ""


EMPTY_GRAPH = ErrorDefinition(
    id="WORKFLOW_EXECUTE_EMPTY_GRAPH",
    text="Workflow must have at least one step",
)
INVALID_GRAPH = ErrorDefinition(id="WORKFLOW_INVALID_GRAPH")
STEP_EXECUTION_FAILED = ErrorDefinition(id="WORKFLOW_STEP_INVOKE_FAILED")
CONDITION_EVALUATION_FAILED = ErrorDefinition(id="WORKFLOW_CONDITION_EVALUATION_FAILED")
ENGINE_STEP_DISPATCH_FAILED = ErrorDefinition(
    id="WORKFLOW_ENGINE_STEP_EXECUTION_FAILED",
    category=ErrorCategory.SYSTEM,
)
WAIT_FOR_EVENT_TIMEOUT = ErrorDefinition(
    id="WORKFLOW_WAIT_FOR_EVENT_TIMEOUT",
    text="Timeout waiting for event",
)
FAILED_TO_FETCH_SCORERS = ErrorDefinition(id="WORKFLOW_FAILED_TO_FETCH_SCORERS")
SCORER_FAILED = ErrorDefinition(id="WORKFLOW_SCORER_FAILED")
RUN_NOT_RESUMABLE = ErrorDefinition(id="WORKFLOW_RUN_NOT_RESUMABLE")
SNAPSHOT_PERSIST_FAILED = ErrorDefinition(
    id="STORAGE_PERSIST_SNAPSHOT_FAILED",
    domain=ErrorDomain.STORAGE,
    category=ErrorCategory.THIRD_PARTY,
)


class WorkflowError(Exception):
    """Base exception for the workflow engine."""

    def __init__(
        self,
        definition: ErrorDefinition,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        """
        Initialize the error.

        Args:
            definition: Taxonomy entry (id, domain, category)
            message: Human-readable message; falls back to the definition
                text, then to the cause's message
            details: Correlation fields (workflow_id, run_id, step_id, ...)
            cause: Original exception being wrapped
        """
        self.definition = definition
        self.details = dict(details or {})
        if message is None:
            message = definition.text or (str(cause) if cause is not None else definition.id)
        self.message = message
        self.stack: str | None = None
        if cause is not None:
            self.__cause__ = cause
            self.stack = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )
        super().__init__(self.message)

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def domain(self) -> ErrorDomain:
        return self.definition.domain

    @property
    def category(self) -> ErrorCategory:
        return self.definition.category

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize for snapshots and events."""
        return {
            "id": self.id,
            "domain": self.domain.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "stack": self.stack,
        }


def normalize_error(
    exc: BaseException,
    definition: ErrorDefinition,
    log_prefix: str = "",
    details: dict[str, Any] | None = None,
) -> WorkflowError:
    """
    Wrap a caught exception into the taxonomy and log it once.

    A ``WorkflowError`` passes through unchanged (its details are merged);
    anything else is wrapped with the original traceback preserved in
    ``stack``.
    """
    if isinstance(exc, WorkflowError):
        error = exc
        if details:
            error.details = {**details, **error.details}
        if error.stack is None:
            error.stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    else:
        error = WorkflowError(definition, details=details, cause=exc)

    logger.error(f"{log_prefix}{error.stack or error.message}")
    return error


def format_error(error: BaseException | str | None) -> str | None:
    """Render an error for a result envelope: stack trace if available, else message."""
    if error is None or isinstance(error, str):
        return error
    if isinstance(error, WorkflowError):
        return error.stack or f"{error.id}: {error.message}"
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))
