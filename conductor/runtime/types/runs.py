"""Run types for the four-agent pipeline.

This module contains the persisted RunState and the cursor variants that
encode where a run currently is. The phase/pending-CRP pair is never stored
as two loose fields: a run is exactly one of ``Working``, ``AwaitingHuman``
or ``Settled``, and the flat ``phase``/``pending_crp`` views are derived.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ._ids import AGENT_NAMES, RunId, is_valid_run_id
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow


class Phase(str, Enum):
    """Phase of a pipeline run."""

    REFINE = "refine"
    BUILD = "build"
    VERIFY = "verify"
    GATE = "gate"
    WAITING_HUMAN = "waiting_human"
    READY_FOR_MERGE = "ready_for_merge"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentStatus(str, Enum):
    """Status of a single agent within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


AGENT_PHASES = (Phase.REFINE, Phase.BUILD, Phase.VERIFY, Phase.GATE)
SETTLED_PHASES = (Phase.READY_FOR_MERGE, Phase.COMPLETED, Phase.FAILED)
TERMINAL_PHASES = (Phase.COMPLETED, Phase.FAILED)

PHASE_TO_AGENT: Dict[Phase, str] = {
    Phase.REFINE: "refiner",
    Phase.BUILD: "builder",
    Phase.VERIFY: "verifier",
    Phase.GATE: "gatekeeper",
}

AGENT_TO_PHASE: Dict[str, Phase] = {agent: phase for phase, agent in PHASE_TO_AGENT.items()}

# Successor of each agent phase on success. The gate is resolved by verdict.
NEXT_PHASE: Dict[Phase, Phase] = {
    Phase.REFINE: Phase.BUILD,
    Phase.BUILD: Phase.VERIFY,
    Phase.VERIFY: Phase.GATE,
}


# =============================================================================
# Cursor variants
# =============================================================================


@dataclass(frozen=True)
class Working:
    """An agent phase is current.

    Attributes:
        phase: One of refine/build/verify/gate.
        resume_vcr: VCR whose decision is fed into the next execution of
            this phase. Set when a human has just answered a CRP.
    """

    phase: Phase
    resume_vcr: Optional[str] = None

    def __post_init__(self) -> None:
        if self.phase not in AGENT_PHASES:
            raise ValueError(f"Working cursor requires an agent phase, got {self.phase!r}")


@dataclass(frozen=True)
class AwaitingHuman:
    """Blocked on a pending CRP raised while in ``raised_in``."""

    crp_id: str
    raised_in: Phase

    def __post_init__(self) -> None:
        if not self.crp_id:
            raise ValueError("AwaitingHuman cursor requires a CRP id")
        if self.raised_in not in AGENT_PHASES:
            raise ValueError(f"CRPs can only be raised from agent phases, got {self.raised_in!r}")


@dataclass(frozen=True)
class Settled:
    """ready_for_merge, completed or failed.

    ``failed_in`` remembers the agent phase a failed run was in, so a human
    can explicitly re-invoke it.
    """

    phase: Phase
    failed_in: Optional[Phase] = None

    def __post_init__(self) -> None:
        if self.phase not in SETTLED_PHASES:
            raise ValueError(f"Settled cursor requires a settled phase, got {self.phase!r}")
        if self.failed_in is not None and self.phase != Phase.FAILED:
            raise ValueError("failed_in is only meaningful for failed runs")


RunCursor = Union[Working, AwaitingHuman, Settled]


# =============================================================================
# Records
# =============================================================================


@dataclass
class AgentRecord:
    """Per-agent execution record."""

    status: AgentStatus = AgentStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class HistoryEntry:
    """One append-only entry in a run's history."""

    phase: Phase
    result: str
    timestamp: datetime


@dataclass(frozen=True)
class LastEvent:
    """Summary of the most recent thing that happened to a run."""

    type: str
    timestamp: datetime
    agent: Optional[str] = None


def _default_agents() -> Dict[str, AgentRecord]:
    return {name: AgentRecord() for name in AGENT_NAMES}


@dataclass
class RunState:
    """Durable state of one pipeline run.

    Attributes:
        run_id: Unique run identifier (run-YYYYMMDD-HHMMSS-xxxxxx).
        cursor: Where the run is (Working / AwaitingHuman / Settled).
        iteration: Current refine->gate cycle, 1-based.
        max_iterations: Upper bound for ``iteration``.
        minor_fix_attempts: MINOR_FAIL verdicts handled in this iteration.
        max_minor_fix_attempts: MINOR_FAIL verdicts allowed per iteration
            before the gate falls back to a FAIL.
        briefing: The goal handed to the refiner.
        agents: Per-agent records keyed by agent name.
        history: Append-only phase results, strictly ordered.
        errors: Append-only error log.
        last_event: Last-event summary.
        started_at: When the run was created.
        updated_at: Last persisted change, used for staleness checks.
    """

    run_id: RunId
    cursor: RunCursor = field(default_factory=lambda: Working(Phase.REFINE))
    iteration: int = 1
    max_iterations: int = 3
    minor_fix_attempts: int = 0
    max_minor_fix_attempts: int = 2
    briefing: str = ""
    agents: Dict[str, AgentRecord] = field(default_factory=_default_agents)
    history: List[HistoryEntry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    last_event: Optional[LastEvent] = None
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not is_valid_run_id(self.run_id):
            raise ValueError(f"Invalid run id: {self.run_id!r}")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if not 1 <= self.iteration <= self.max_iterations:
            raise ValueError(
                f"iteration {self.iteration} outside 1..{self.max_iterations}"
            )
        if self.minor_fix_attempts < 0 or self.max_minor_fix_attempts < 0:
            raise ValueError("minor fix attempts must be >= 0")
        for name in AGENT_NAMES:
            self.agents.setdefault(name, AgentRecord())

    @property
    def phase(self) -> Phase:
        if isinstance(self.cursor, AwaitingHuman):
            return Phase.WAITING_HUMAN
        return self.cursor.phase

    @property
    def pending_crp(self) -> Optional[str]:
        if isinstance(self.cursor, AwaitingHuman):
            return self.cursor.crp_id
        return None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def current_agent(self) -> Optional[str]:
        """Agent owning the current phase (the raising agent while waiting)."""
        if isinstance(self.cursor, Working):
            return PHASE_TO_AGENT[self.cursor.phase]
        if isinstance(self.cursor, AwaitingHuman):
            return PHASE_TO_AGENT[self.cursor.raised_in]
        return None

    def add_history(self, phase: Phase, result: str, timestamp: Optional[datetime] = None) -> None:
        self.history.append(HistoryEntry(phase=phase, result=result, timestamp=timestamp or _utcnow()))

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def touch(self, event_type: str, agent: Optional[str] = None) -> None:
        """Record the last event and bump ``updated_at``."""
        now = _utcnow()
        self.last_event = LastEvent(type=event_type, timestamp=now, agent=agent)
        self.updated_at = now


# =============================================================================
# Serialization Functions
# =============================================================================


def cursor_to_fields(cursor: RunCursor) -> Dict[str, Optional[str]]:
    """Flatten a cursor into the persisted phase/pending_crp fields."""
    fields: Dict[str, Optional[str]] = {
        "phase": None,
        "pending_crp": None,
        "raised_in": None,
        "resume_vcr": None,
        "failed_in": None,
    }
    if isinstance(cursor, Working):
        fields["phase"] = cursor.phase.value
        fields["resume_vcr"] = cursor.resume_vcr
    elif isinstance(cursor, AwaitingHuman):
        fields["phase"] = Phase.WAITING_HUMAN.value
        fields["pending_crp"] = cursor.crp_id
        fields["raised_in"] = cursor.raised_in.value
    else:
        fields["phase"] = cursor.phase.value
        fields["failed_in"] = cursor.failed_in.value if cursor.failed_in else None
    return fields


def cursor_from_fields(data: Dict[str, Any]) -> RunCursor:
    """Rebuild a cursor from persisted fields.

    Raises:
        ValueError: If the fields describe an illegal combination, e.g.
            phase=waiting_human without a pending CRP or a pending CRP on
            any other phase.
    """
    phase = Phase(data.get("phase", Phase.REFINE.value))
    pending_crp = data.get("pending_crp")

    if phase == Phase.WAITING_HUMAN:
        if not pending_crp:
            raise ValueError("phase=waiting_human requires pending_crp")
        raised_in = data.get("raised_in")
        if not raised_in:
            raise ValueError("phase=waiting_human requires raised_in")
        return AwaitingHuman(crp_id=pending_crp, raised_in=Phase(raised_in))

    if pending_crp:
        raise ValueError(f"pending_crp set while phase={phase.value}")

    if phase in AGENT_PHASES:
        return Working(phase=phase, resume_vcr=data.get("resume_vcr"))

    failed_in = data.get("failed_in")
    return Settled(phase=phase, failed_in=Phase(failed_in) if failed_in else None)


def agent_record_to_dict(record: AgentRecord) -> Dict[str, Any]:
    return {
        "status": record.status.value,
        "started_at": _datetime_to_iso(record.started_at),
        "completed_at": _datetime_to_iso(record.completed_at),
        "error": record.error,
    }


def agent_record_from_dict(data: Dict[str, Any]) -> AgentRecord:
    return AgentRecord(
        status=AgentStatus(data.get("status", AgentStatus.PENDING.value)),
        started_at=_iso_to_datetime(data.get("started_at")),
        completed_at=_iso_to_datetime(data.get("completed_at")),
        error=data.get("error"),
    )


def run_state_to_dict(state: RunState) -> Dict[str, Any]:
    """Convert RunState to a dictionary for serialization.

    Args:
        state: The RunState to convert.

    Returns:
        Dictionary representation suitable for JSON serialization.
    """
    data: Dict[str, Any] = {"run_id": state.run_id}
    data.update(cursor_to_fields(state.cursor))
    data.update(
        {
            "iteration": state.iteration,
            "max_iterations": state.max_iterations,
            "minor_fix_attempts": state.minor_fix_attempts,
            "max_minor_fix_attempts": state.max_minor_fix_attempts,
            "briefing": state.briefing,
            "agents": {name: agent_record_to_dict(rec) for name, rec in state.agents.items()},
            "history": [
                {
                    "phase": entry.phase.value,
                    "result": entry.result,
                    "timestamp": _datetime_to_iso(entry.timestamp),
                }
                for entry in state.history
            ],
            "errors": list(state.errors),
            "last_event": (
                {
                    "type": state.last_event.type,
                    "agent": state.last_event.agent,
                    "timestamp": _datetime_to_iso(state.last_event.timestamp),
                }
                if state.last_event
                else None
            ),
            "started_at": _datetime_to_iso(state.started_at),
            "updated_at": _datetime_to_iso(state.updated_at),
        }
    )
    return data


def run_state_from_dict(data: Dict[str, Any]) -> RunState:
    """Parse RunState from a dictionary.

    Args:
        data: Dictionary with RunState fields.

    Returns:
        Parsed RunState instance.

    Raises:
        ValueError: On an illegal phase/pending_crp combination or an
            out-of-range iteration.
        KeyError: If run_id is missing.
    """
    last_event = data.get("last_event")
    now = _utcnow()
    return RunState(
        run_id=data["run_id"],
        cursor=cursor_from_fields(data),
        iteration=int(data.get("iteration", 1)),
        max_iterations=int(data.get("max_iterations", 3)),
        minor_fix_attempts=int(data.get("minor_fix_attempts", 0)),
        max_minor_fix_attempts=int(data.get("max_minor_fix_attempts", 2)),
        briefing=data.get("briefing", ""),
        agents={
            name: agent_record_from_dict(rec)
            for name, rec in dict(data.get("agents", {})).items()
        },
        history=[
            HistoryEntry(
                phase=Phase(entry["phase"]),
                result=entry.get("result", ""),
                timestamp=_iso_to_datetime(entry.get("timestamp")) or now,
            )
            for entry in data.get("history", [])
        ],
        errors=list(data.get("errors", [])),
        last_event=(
            LastEvent(
                type=last_event.get("type", ""),
                agent=last_event.get("agent"),
                timestamp=_iso_to_datetime(last_event.get("timestamp")) or now,
            )
            if last_event
            else None
        ),
        started_at=_iso_to_datetime(data.get("started_at")) or now,
        updated_at=_iso_to_datetime(data.get("updated_at")) or now,
    )
