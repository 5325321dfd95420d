"""Error taxonomy for flowguard executions."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Classification attached to every flowguard error."""

    VALIDATION = "validation"
    COMPLETION_SERVICE = "completion_service"
    INVALID_STATE = "invalid_state"
    TIMEOUT = "timeout"
    NOT_IMPLEMENTED = "not_implemented"
    NOT_FOUND = "not_found"
    DEFINITION = "definition"
    AGENT_ERROR = "agent_error"


class FlowguardError(Exception):
    """Base class for errors raised by the engine and its agents."""

    kind: ErrorKind = ErrorKind.AGENT_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FlowguardError):
    """Agent inputs are missing or malformed."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        missing: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.missing = missing or []


class CompletionServiceError(FlowguardError):
    """The external completion service call failed."""

    kind = ErrorKind.COMPLETION_SERVICE


class InvalidStateError(FlowguardError):
    """An operation was attempted from an incompatible execution state."""

    kind = ErrorKind.INVALID_STATE

    def __init__(
        self,
        message: str,
        status: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.status = status
        self.operation = operation


class ExecutionTimeoutError(FlowguardError):
    """The execution exceeded its running-time budget."""

    kind = ErrorKind.TIMEOUT


class AgentNotImplementedError(FlowguardError, NotImplementedError):
    """An agent variant did not supply ``execute()``."""

    kind = ErrorKind.NOT_IMPLEMENTED


class NotFoundError(FlowguardError, LookupError):
    kind = ErrorKind.NOT_FOUND


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(
            f"Execution {execution_id} not found", {"execution_id": execution_id}
        )
        self.execution_id = execution_id


class WorkflowDefinitionError(FlowguardError):
    """A workflow definition failed validation."""

    kind = ErrorKind.DEFINITION

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class RoutingError(FlowguardError):
    """No outbound connection could be taken from a node."""

    kind = ErrorKind.DEFINITION


def error_kind_of(error: BaseException) -> ErrorKind:
    """Return the ``ErrorKind`` for any exception."""
    if isinstance(error, FlowguardError):
        return error.kind
    return ErrorKind.AGENT_ERROR


__all__ = [
    "ErrorKind",
    "FlowguardError",
    "ValidationError",
    "CompletionServiceError",
    "InvalidStateError",
    "ExecutionTimeoutError",
    "AgentNotImplementedError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    "WorkflowDefinitionError",
    "RoutingError",
    "error_kind_of",
]
