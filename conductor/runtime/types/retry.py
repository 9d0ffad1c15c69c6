"""Error kinds and retry bookkeeping keys."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failure.

    crash/timeout/validation describe agent failures and are the only kinds
    eligible for automatic retry.
    """

    CRASH = "crash"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    INVALID_DECISION = "invalid_decision"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"
    RUN_FAILED = "run_failed"
    NEEDS_HUMAN = "needs_human"


RECOVERABLE_ERROR_KINDS = (ErrorKind.CRASH, ErrorKind.TIMEOUT, ErrorKind.VALIDATION)


@dataclass(frozen=True)
class RetryContext:
    """Identifies the operation being retried.

    ``error_kind`` may be given when the caller already knows which failure
    it is retrying; otherwise the kind is taken from each failure.
    """

    run_id: str
    agent: str
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class RetryKey:
    """Key of an attempt counter: one per (run, agent, error kind)."""

    run_id: str
    agent: str
    error_kind: ErrorKind

    @classmethod
    def for_context(cls, context: RetryContext, error_kind: ErrorKind) -> "RetryKey":
        return cls(run_id=context.run_id, agent=context.agent, error_kind=error_kind)
