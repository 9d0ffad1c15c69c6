"""Exception hierarchy for the conductor runtime.

Every error carries an ``ErrorKind``. The retry executor only retries the
agent failure kinds (crash, timeout, validation); everything else surfaces
to the caller immediately.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .types import ErrorKind


# =============================================================================
# Error Types
# =============================================================================


class ConductorError(Exception):
    """Base exception for conductor errors."""

    kind: ErrorKind = ErrorKind.CRASH

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "context": dict(self.context)}


class AgentCrashError(ConductorError):
    """The agent process died or produced no usable result."""

    kind = ErrorKind.CRASH


class AgentTimeoutError(ConductorError):
    """The agent did not finish within its timeout."""

    kind = ErrorKind.TIMEOUT


class AgentValidationError(ConductorError):
    """The agent finished but its output was rejected."""

    kind = ErrorKind.VALIDATION


class NotFoundError(ConductorError):
    """Raised when a run, CRP, VCR, mission, phase or task does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found", {"entity": entity, "id": entity_id})


class PreconditionFailedError(ConductorError):
    """The operation is not allowed in the current state."""

    kind = ErrorKind.PRECONDITION_FAILED


class InvalidDecisionError(ConductorError):
    """A submitted value is not among the allowed ones."""

    kind = ErrorKind.INVALID_DECISION

    def __init__(self, field: str, value: Any, valid_values: List[str]):
        self.field = field
        self.value = value
        self.valid_values = list(valid_values)
        super().__init__(
            f"Invalid {field} {value!r}; expected one of: {', '.join(self.valid_values)}",
            {"field": field, "value": value, "valid_values": self.valid_values},
        )


class RetryExhaustedError(ConductorError):
    """All retry attempts failed.

    The original error is available as ``__cause__`` and ``last_error``.
    """

    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(self, message: str, attempts: int, last_kind: ErrorKind, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_kind = last_kind
        self.last_error = last_error
        super().__init__(
            message,
            {"attempts": attempts, "last_kind": last_kind.value},
        )

    def __str__(self) -> str:
        return f"{self.message} (after {self.attempts} attempts)"


class RunCancelledError(ConductorError):
    """The run or task was stopped while work was outstanding."""

    kind = ErrorKind.CANCELLED


class RunFailedError(ConductorError):
    """A pipeline run backing a task settled in failed.

    The run already spent its own retry budget, so this is never retried by
    starting another run.
    """

    kind = ErrorKind.RUN_FAILED

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(message, {"run_id": run_id})


class AwaitingHumanError(ConductorError):
    """A pipeline run backing a task is blocked on a pending CRP."""

    kind = ErrorKind.NEEDS_HUMAN

    def __init__(self, run_id: str, crp_id: str):
        self.run_id = run_id
        self.crp_id = crp_id
        super().__init__(
            f"run {run_id} is waiting for a human decision on {crp_id}",
            {"run_id": run_id, "crp_id": crp_id},
        )


def error_kind_of(error: BaseException) -> Optional[ErrorKind]:
    """Return the kind an exception declares, or None for foreign exceptions."""
    if isinstance(error, ConductorError):
        return error.kind
    return None
