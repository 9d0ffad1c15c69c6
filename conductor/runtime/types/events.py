"""Typed events published on the conductor event stream.

Every event is a frozen dataclass with a ``kind`` class attribute, so
subscribers can match on the class or on ``event.kind``. Events that name a
run are also written to that run's ``events.jsonl`` journal as
``JournalEntry`` records.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from ._ids import RunId
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .retry import ErrorKind, RetryContext
from .runs import Phase


# =============================================================================
# Retry events
# =============================================================================


@dataclass(frozen=True)
class RetryStarted:
    kind: ClassVar[str] = "retry_started"
    context: RetryContext
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class RetryDelay:
    kind: ClassVar[str] = "retry_delay"
    context: RetryContext
    delay_seconds: float
    attempt: int


@dataclass(frozen=True)
class RetrySucceeded:
    kind: ClassVar[str] = "retry_success"
    context: RetryContext
    attempt: int


@dataclass(frozen=True)
class RetryFailed:
    kind: ClassVar[str] = "retry_failed"
    context: RetryContext
    attempt: int
    error: str
    error_kind: ErrorKind


@dataclass(frozen=True)
class RetryExhausted:
    kind: ClassVar[str] = "retry_exhausted"
    context: RetryContext
    total_attempts: int
    error: str


# =============================================================================
# Run (orchestrator and protocol) events
# =============================================================================


@dataclass(frozen=True)
class RunStarted:
    kind: ClassVar[str] = "run_started"
    run_id: RunId
    max_iterations: int


@dataclass(frozen=True)
class PhaseChanged:
    kind: ClassVar[str] = "phase_changed"
    run_id: RunId
    from_phase: Phase
    to_phase: Phase


@dataclass(frozen=True)
class AgentStarted:
    kind: ClassVar[str] = "agent_started"
    run_id: RunId
    agent: str


@dataclass(frozen=True)
class AgentCompleted:
    kind: ClassVar[str] = "agent_completed"
    run_id: RunId
    agent: str


@dataclass(frozen=True)
class AgentFailed:
    kind: ClassVar[str] = "agent_failed"
    run_id: RunId
    agent: str
    error: str


@dataclass(frozen=True)
class IterationStarted:
    kind: ClassVar[str] = "iteration_started"
    run_id: RunId
    iteration: int
    max_iterations: int


@dataclass(frozen=True)
class MinorFixStarted:
    kind: ClassVar[str] = "minor_fix_started"
    run_id: RunId
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class CRPRaised:
    kind: ClassVar[str] = "crp_raised"
    run_id: RunId
    crp_id: str
    agent: str


@dataclass(frozen=True)
class CRPAutoResolved:
    kind: ClassVar[str] = "crp_auto_resolved"
    run_id: RunId
    crp_id: str
    vcr_id: str
    decision: str
    standing_vcr: str


@dataclass(frozen=True)
class VCRRecorded:
    kind: ClassVar[str] = "vcr_recorded"
    run_id: RunId
    crp_id: str
    vcr_id: str
    decision: str
    resume_phase: Phase


@dataclass(frozen=True)
class RunReadyForMerge:
    kind: ClassVar[str] = "run_ready_for_merge"
    run_id: RunId
    iteration: int


@dataclass(frozen=True)
class RunCompleted:
    kind: ClassVar[str] = "run_completed"
    run_id: RunId


@dataclass(frozen=True)
class RunFailed:
    kind: ClassVar[str] = "run_failed"
    run_id: RunId
    phase: Phase
    error: str


@dataclass(frozen=True)
class RunStopped:
    kind: ClassVar[str] = "run_stopped"
    run_id: RunId
    reason: str


# =============================================================================
# Recovery events
# =============================================================================


@dataclass(frozen=True)
class ScanStarted:
    kind: ClassVar[str] = "scan_started"


@dataclass(frozen=True)
class ScanCompleted:
    kind: ClassVar[str] = "scan_completed"
    found: int


@dataclass(frozen=True)
class RecoveryStarted:
    kind: ClassVar[str] = "recovery_started"
    run_id: RunId
    strategy: str


@dataclass(frozen=True)
class RecoveryCompleted:
    kind: ClassVar[str] = "recovery_completed"
    run_id: RunId
    strategy: str
    message: str


@dataclass(frozen=True)
class RecoveryFailed:
    kind: ClassVar[str] = "recovery_failed"
    run_id: RunId
    error: str


# =============================================================================
# Mission events
# =============================================================================


@dataclass(frozen=True)
class TaskStarted:
    kind: ClassVar[str] = "task_started"
    mission_id: str
    task_id: str


@dataclass(frozen=True)
class TaskFinished:
    kind: ClassVar[str] = "task_finished"
    mission_id: str
    task_id: str
    status: str
    run_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class MissionPhaseFinished:
    kind: ClassVar[str] = "mission_phase_finished"
    mission_id: str
    phase_number: int
    status: str
    tasks_completed: int
    tasks_failed: int


ConductorEvent = Union[
    RetryStarted,
    RetryDelay,
    RetrySucceeded,
    RetryFailed,
    RetryExhausted,
    RunStarted,
    PhaseChanged,
    AgentStarted,
    AgentCompleted,
    AgentFailed,
    IterationStarted,
    MinorFixStarted,
    CRPRaised,
    CRPAutoResolved,
    VCRRecorded,
    RunReadyForMerge,
    RunCompleted,
    RunFailed,
    RunStopped,
    ScanStarted,
    ScanCompleted,
    RecoveryStarted,
    RecoveryCompleted,
    RecoveryFailed,
    TaskStarted,
    TaskFinished,
    MissionPhaseFinished,
]


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, RetryContext):
        return {
            "run_id": value.run_id,
            "agent": value.agent,
            "error_kind": value.error_kind.value if value.error_kind else None,
        }
    return value


def event_payload(event: ConductorEvent) -> Dict[str, Any]:
    """JSON-ready payload of an event (its fields, enums flattened)."""
    return {f.name: _plain(getattr(event, f.name)) for f in fields(event)}


def event_run_id(event: ConductorEvent) -> Optional[RunId]:
    """Run an event belongs to, if any."""
    run_id = getattr(event, "run_id", None)
    if run_id is None and isinstance(getattr(event, "context", None), RetryContext):
        run_id = event.context.run_id
    return run_id


# =============================================================================
# Journal entries (events.jsonl)
# =============================================================================


@dataclass
class JournalEntry:
    """A single line of a run's events.jsonl journal.

    Attributes:
        run_id: The run this entry belongs to.
        ts: Timestamp of the entry.
        kind: Event kind (e.g. "phase_changed").
        payload: Event fields.
        event_id: Globally unique identifier.
        seq: Monotonic sequence number within the run (assigned by storage).
    """

    run_id: RunId
    ts: datetime
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    seq: int = 0


def journal_entry_from_event(run_id: RunId, event: ConductorEvent) -> JournalEntry:
    return JournalEntry(run_id=run_id, ts=_utcnow(), kind=event.kind, payload=event_payload(event))


def journal_entry_to_dict(entry: JournalEntry) -> Dict[str, Any]:
    return {
        "run_id": entry.run_id,
        "ts": _datetime_to_iso(entry.ts),
        "kind": entry.kind,
        "event_id": entry.event_id,
        "seq": entry.seq,
        "payload": dict(entry.payload),
    }


def journal_entry_from_dict(data: Dict[str, Any]) -> JournalEntry:
    return JournalEntry(
        run_id=data.get("run_id", ""),
        ts=_iso_to_datetime(data.get("ts")) or _utcnow(),
        kind=data.get("kind", ""),
        payload=dict(data.get("payload", {})),
        event_id=data.get("event_id") or str(uuid.uuid4()),
        seq=int(data.get("seq", 0)),
    )
