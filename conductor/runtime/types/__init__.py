"""
types - Core type definitions for the conductor runtime

This package provides the data types shared by the orchestrator, the CRP/VCR
protocol, interrupt recovery and the mission engine. Types are plain
dataclasses with explicit ``*_to_dict`` / ``*_from_dict`` serialization
functions.

Usage:
    from conductor.runtime.types import (
        RunId, Phase, AgentStatus, RunState, Working, AwaitingHuman, Settled,
        CRP, CRPOption, VCR, Mission, MissionPhase, MissionTask,
        ErrorKind, RetryContext, RetryKey,
        generate_run_id, run_state_to_dict, run_state_from_dict,
    )
"""

from __future__ import annotations

from ._ids import (
    AGENT_NAMES,
    AgentName,
    MissionId,
    RunId,
    TaskId,
    generate_mission_id,
    generate_run_id,
    is_valid_mission_id,
    is_valid_run_id,
    make_crp_id,
    make_task_id,
    make_vcr_id,
)
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .events import (
    AgentCompleted,
    AgentFailed,
    AgentStarted,
    ConductorEvent,
    CRPAutoResolved,
    CRPRaised,
    IterationStarted,
    JournalEntry,
    MinorFixStarted,
    MissionPhaseFinished,
    PhaseChanged,
    RecoveryCompleted,
    RecoveryFailed,
    RecoveryStarted,
    RetryDelay,
    RetryExhausted,
    RetryFailed,
    RetryStarted,
    RetrySucceeded,
    RunCompleted,
    RunFailed,
    RunReadyForMerge,
    RunStarted,
    RunStopped,
    ScanCompleted,
    ScanStarted,
    TaskFinished,
    TaskStarted,
    VCRRecorded,
    event_payload,
    event_run_id,
    journal_entry_from_dict,
    journal_entry_from_event,
    journal_entry_to_dict,
)
from .missions import (
    EXECUTABLE_MISSION_STATUSES,
    RESOLVED_TASK_STATUSES,
    Mission,
    MissionPhase,
    MissionStats,
    MissionStatus,
    MissionTask,
    PhaseRunResult,
    PhaseStatus,
    TaskRunResult,
    TaskStatus,
    dependency_problems,
    mission_from_dict,
    mission_to_dict,
    phases_from_plan,
)
from .protocol import (
    CRP,
    FINGERPRINT_MODES,
    VCR,
    CRPOption,
    crp_from_dict,
    crp_to_dict,
    question_fingerprint,
    vcr_from_dict,
    vcr_to_dict,
)
from .retry import RECOVERABLE_ERROR_KINDS, ErrorKind, RetryContext, RetryKey
from .runs import (
    AGENT_PHASES,
    AGENT_TO_PHASE,
    NEXT_PHASE,
    PHASE_TO_AGENT,
    SETTLED_PHASES,
    TERMINAL_PHASES,
    AgentRecord,
    AgentStatus,
    AwaitingHuman,
    HistoryEntry,
    LastEvent,
    Phase,
    RunCursor,
    RunState,
    Settled,
    Working,
    run_state_from_dict,
    run_state_to_dict,
)

__all__ = [
    # IDs
    "AGENT_NAMES",
    "AgentName",
    "MissionId",
    "RunId",
    "TaskId",
    "generate_mission_id",
    "generate_run_id",
    "is_valid_mission_id",
    "is_valid_run_id",
    "make_crp_id",
    "make_task_id",
    "make_vcr_id",
    # Time helpers
    "_datetime_to_iso",
    "_iso_to_datetime",
    "_utcnow",
    # Runs
    "AGENT_PHASES",
    "AGENT_TO_PHASE",
    "NEXT_PHASE",
    "PHASE_TO_AGENT",
    "SETTLED_PHASES",
    "TERMINAL_PHASES",
    "AgentRecord",
    "AgentStatus",
    "AwaitingHuman",
    "HistoryEntry",
    "LastEvent",
    "Phase",
    "RunCursor",
    "RunState",
    "Settled",
    "Working",
    "run_state_from_dict",
    "run_state_to_dict",
    # Protocol
    "CRP",
    "CRPOption",
    "FINGERPRINT_MODES",
    "VCR",
    "crp_from_dict",
    "crp_to_dict",
    "question_fingerprint",
    "vcr_from_dict",
    "vcr_to_dict",
    # Missions
    "EXECUTABLE_MISSION_STATUSES",
    "RESOLVED_TASK_STATUSES",
    "Mission",
    "MissionPhase",
    "MissionStats",
    "MissionStatus",
    "MissionTask",
    "PhaseRunResult",
    "PhaseStatus",
    "TaskRunResult",
    "TaskStatus",
    "dependency_problems",
    "mission_from_dict",
    "mission_to_dict",
    "phases_from_plan",
    # Retry
    "RECOVERABLE_ERROR_KINDS",
    "ErrorKind",
    "RetryContext",
    "RetryKey",
    # Events
    "AgentCompleted",
    "AgentFailed",
    "AgentStarted",
    "ConductorEvent",
    "CRPAutoResolved",
    "CRPRaised",
    "IterationStarted",
    "JournalEntry",
    "MinorFixStarted",
    "MissionPhaseFinished",
    "PhaseChanged",
    "RecoveryCompleted",
    "RecoveryFailed",
    "RecoveryStarted",
    "RetryDelay",
    "RetryExhausted",
    "RetryFailed",
    "RetryStarted",
    "RetrySucceeded",
    "RunCompleted",
    "RunFailed",
    "RunReadyForMerge",
    "RunStarted",
    "RunStopped",
    "ScanCompleted",
    "ScanStarted",
    "TaskFinished",
    "TaskStarted",
    "VCRRecorded",
    "event_payload",
    "event_run_id",
    "journal_entry_from_dict",
    "journal_entry_from_event",
    "journal_entry_to_dict",
]
