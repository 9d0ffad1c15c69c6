"""
recovery.py - Detection and recovery of interrupted runs

After a crash or restart, runs that were mid-pipeline are found by scanning
persisted state and asking the process host whether the agent of the
current phase is still alive. Each interrupted run is classified and given
a resume strategy:

    stale_attached          live process, no progress  -> reattach_and_wait
    crashed_mid_phase       no process, agent phase     -> retry_phase
    crashed_awaiting_human  no process, waiting_human   -> prompt_for_vcr

Healthy runs (live and recently updated), settled runs and runs older than
the maximum age are not reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from . import storage
from .errors import ConductorError, NotFoundError, PreconditionFailedError
from .events import EventStream
from .process_host import ProcessHostFactory
from .types import (
    PHASE_TO_AGENT,
    AgentStatus,
    AwaitingHuman,
    Phase,
    RecoveryCompleted,
    RecoveryFailed,
    RecoveryStarted,
    RetryContext,
    RunFailed,
    RunId,
    RunState,
    ScanCompleted,
    ScanStarted,
    Settled,
    Working,
    _datetime_to_iso,
    _utcnow,
)

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

# Module logger
logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 600
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


class Classification(str, Enum):
    HEALTHY = "healthy"
    STALE_ATTACHED = "stale_attached"
    CRASHED_MID_PHASE = "crashed_mid_phase"
    CRASHED_AWAITING_HUMAN = "crashed_awaiting_human"


class ResumeStrategy(str, Enum):
    REATTACH_AND_WAIT = "reattach_and_wait"
    RETRY_PHASE = "retry_phase"
    PROMPT_FOR_VCR = "prompt_for_vcr"


@dataclass
class InterruptedRunRecord:
    """An interrupted run and how to resume it."""

    run_id: RunId
    phase: Phase
    last_agent: Optional[str]
    classification: Classification
    resume_strategy: ResumeStrategy
    reason: str
    interrupted_at: datetime
    session_exists: bool
    iteration: int
    max_iterations: int


@dataclass
class RecoveryResult:
    """Outcome of applying a resume strategy."""

    run_id: RunId
    success: bool
    strategy: Optional[ResumeStrategy]
    message: str
    error: Optional[str] = None
    phase: Optional[Phase] = None


def interrupted_run_to_dict(record: InterruptedRunRecord) -> Dict[str, Any]:
    return {
        "run_id": record.run_id,
        "phase": record.phase.value,
        "last_agent": record.last_agent,
        "classification": record.classification.value,
        "resume_strategy": record.resume_strategy.value,
        "reason": record.reason,
        "interrupted_at": _datetime_to_iso(record.interrupted_at),
        "session_exists": record.session_exists,
        "iteration": record.iteration,
        "max_iterations": record.max_iterations,
    }


def recovery_result_to_dict(result: RecoveryResult) -> Dict[str, Any]:
    return {
        "run_id": result.run_id,
        "success": result.success,
        "strategy": result.strategy.value if result.strategy else None,
        "message": result.message,
        "error": result.error,
        "phase": result.phase.value if result.phase else None,
    }


def classify_run(
    state: RunState,
    live: bool,
    now: datetime,
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
) -> Tuple[Classification, Optional[ResumeStrategy], str]:
    """Classify an unsettled run from liveness and staleness.

    Returns:
        (classification, strategy, reason); the strategy is None for
        healthy runs.
    """
    agent = state.current_agent
    stale = now - state.updated_at > timedelta(seconds=stale_after_seconds)

    if live and not stale:
        return Classification.HEALTHY, None, f"Agent {agent} is running"
    if live:
        idle = int((now - state.updated_at).total_seconds())
        return (
            Classification.STALE_ATTACHED,
            ResumeStrategy.REATTACH_AND_WAIT,
            f"Agent {agent} is still running but the run has not progressed for {idle}s",
        )
    if isinstance(state.cursor, AwaitingHuman):
        return (
            Classification.CRASHED_AWAITING_HUMAN,
            ResumeStrategy.PROMPT_FOR_VCR,
            f"Run is waiting on {state.cursor.crp_id}; no process is attached",
        )
    return (
        Classification.CRASHED_MID_PHASE,
        ResumeStrategy.RETRY_PHASE,
        f"Run was in {state.phase.value} phase with no live process, will restart {agent}",
    )


class InterruptRecovery:
    """Detects interrupted runs and applies resume strategies.

    Args:
        state_dir: Root of persisted state.
        host_factory: Builds the ProcessHost of a run.
        events: Typed event stream.
        orchestrator: When given, ``retry_phase`` re-runs the phase.
        auto_recover: Apply strategies without explicit confirmation.
        stale_after_seconds: Idle time after which a live run is stale.
        max_age_seconds: Runs started longer ago than this are ignored.
        clock: Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        state_dir: Path,
        host_factory: ProcessHostFactory,
        events: Optional[EventStream] = None,
        orchestrator: Optional["Orchestrator"] = None,
        auto_recover: bool = False,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.state_dir = Path(state_dir)
        self._host_factory = host_factory
        self.events = events or EventStream()
        self.orchestrator = orchestrator
        self.auto_recover = auto_recover
        self.stale_after_seconds = stale_after_seconds
        self.max_age_seconds = max_age_seconds
        self._clock = clock or _utcnow

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def _inspect_state(self, state: RunState, now: datetime) -> Optional[InterruptedRunRecord]:
        if isinstance(state.cursor, Settled):
            return None
        if now - state.started_at > timedelta(seconds=self.max_age_seconds):
            logger.debug("Skipping run %s: older than %ss", state.run_id, self.max_age_seconds)
            return None

        agent = state.current_agent
        host = self._host_factory(state.run_id)
        session_exists = host.session_exists()
        live = bool(agent) and session_exists and host.is_pane_active(agent)

        classification, strategy, reason = classify_run(state, live, now, self.stale_after_seconds)
        if strategy is None:
            return None

        return InterruptedRunRecord(
            run_id=state.run_id,
            phase=state.phase,
            last_agent=agent or (state.last_event.agent if state.last_event else None),
            classification=classification,
            resume_strategy=strategy,
            reason=reason,
            interrupted_at=state.updated_at,
            session_exists=session_exists,
            iteration=state.iteration,
            max_iterations=state.max_iterations,
        )

    def detect_interrupted_runs(self) -> List[InterruptedRunRecord]:
        """Scan all persisted runs and report the interrupted ones."""
        self.events.publish(ScanStarted())
        now = self._clock()
        records: List[InterruptedRunRecord] = []
        for state in storage.read_all_run_states(self.state_dir):
            record = self._inspect_state(state, now)
            if record is not None:
                records.append(record)

        if records:
            logger.info("Found %d interrupted run(s)", len(records))
        self.events.publish(ScanCompleted(found=len(records)))
        return records

    def inspect(self, run_id: RunId) -> Optional[InterruptedRunRecord]:
        """Classify a single run; None if it does not need recovery.

        Raises:
            NotFoundError: Unknown run.
        """
        state = storage.read_run_state(run_id, self.state_dir)
        if state is None:
            raise NotFoundError("run", run_id)
        return self._inspect_state(state, self._clock())

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover(self, run_id: RunId, confirmed: bool = False) -> RecoveryResult:
        """Apply the resume strategy of an interrupted run.

        Raises:
            PreconditionFailedError: auto_recover is off and the caller did
                not confirm.
            NotFoundError: Unknown run.
        """
        if not (self.auto_recover or confirmed):
            raise PreconditionFailedError(
                f"Recovery of {run_id} requires confirmation (auto_recover is disabled)",
                {"run_id": run_id},
            )

        record = self.inspect(run_id)
        if record is None:
            state = storage.read_run_state(run_id, self.state_dir)
            return RecoveryResult(
                run_id=run_id,
                success=False,
                strategy=None,
                message="Run does not need recovery",
                phase=state.phase if state else None,
            )

        strategy = record.resume_strategy
        self.events.publish(RecoveryStarted(run_id=run_id, strategy=strategy.value))
        logger.info("Recovering run %s with %s: %s", run_id, strategy.value, record.reason)

        try:
            if strategy == ResumeStrategy.RETRY_PHASE:
                message, phase = await self._retry_phase(run_id, record)
            elif strategy == ResumeStrategy.REATTACH_AND_WAIT:
                message = f"Agent {record.last_agent} is still attached; waiting for it to finish"
                phase = record.phase
            else:
                message = f"Run is waiting for a human decision; submit a VCR to resume ({record.reason})"
                phase = record.phase
        except ConductorError as e:
            logger.warning("Recovery of run %s failed: %s", run_id, e)
            self.events.publish(RecoveryFailed(run_id=run_id, error=str(e)))
            return RecoveryResult(
                run_id=run_id,
                success=False,
                strategy=strategy,
                message="Recovery failed",
                error=str(e),
                phase=record.phase,
            )

        self.events.publish(RecoveryCompleted(run_id=run_id, strategy=strategy.value, message=message))
        return RecoveryResult(run_id=run_id, success=True, strategy=strategy, message=message, phase=phase)

    async def _retry_phase(self, run_id: RunId, record: InterruptedRunRecord) -> Tuple[str, Phase]:
        with storage.get_lock(run_id):
            state = storage.read_run_state(run_id, self.state_dir)
            if state is None:
                raise NotFoundError("run", run_id)
            if not isinstance(state.cursor, Working):
                raise PreconditionFailedError(
                    f"Run {run_id} left its agent phase during recovery", {"run_id": run_id}
                )
            phase = state.cursor.phase
            agent = PHASE_TO_AGENT[phase]
            agent_record = state.agents[agent]
            agent_record.status = AgentStatus.PENDING
            agent_record.started_at = None
            agent_record.completed_at = None
            agent_record.error = None
            state.add_history(phase, "recovered")
            state.touch("recovered", agent)
            storage.write_run_state(state, self.state_dir)

        if self.orchestrator is None:
            return f"Run prepared for recovery; {agent} will be restarted", phase

        self.orchestrator.retry.reset_attempts(RetryContext(run_id=run_id, agent=agent))
        state = await self.orchestrator.advance(run_id)
        return f"Restarted {agent}; run is now {state.phase.value}", state.phase

    async def recover_all(self) -> List[RecoveryResult]:
        """Apply every strategy; only when auto_recover is enabled."""
        if not self.auto_recover:
            raise PreconditionFailedError("recover_all requires auto_recover")
        results: List[RecoveryResult] = []
        for record in self.detect_interrupted_runs():
            results.append(await self.recover(record.run_id))
        return results

    def mark_as_failed(self, run_id: RunId, reason: str) -> RunState:
        """Give up on a run that cannot be recovered."""
        with storage.get_lock(run_id):
            state = storage.read_run_state(run_id, self.state_dir)
            if state is None:
                raise NotFoundError("run", run_id)
            if state.is_terminal:
                raise PreconditionFailedError(
                    f"Run {run_id} is already {state.phase.value}", {"run_id": run_id}
                )
            from_phase = state.phase
            failed_in: Optional[Phase] = None
            if isinstance(state.cursor, Working):
                failed_in = state.cursor.phase
            elif isinstance(state.cursor, AwaitingHuman):
                failed_in = state.cursor.raised_in
            state.cursor = Settled(Phase.FAILED, failed_in=failed_in)
            message = f"Recovery failed: {reason}"
            state.add_error(message)
            state.add_history(from_phase, "recovery_failed")
            state.touch("run_failed", state.current_agent)
            storage.write_run_state(state, self.state_dir)

        logger.warning("Marked run %s as failed: %s", run_id, reason)
        self.events.publish(RunFailed(run_id=run_id, phase=from_phase, error=message))
        return state

    def summarize(self, records: Optional[List[InterruptedRunRecord]] = None) -> str:
        """Human-readable summary of interrupted runs."""
        if records is None:
            records = self.detect_interrupted_runs()
        if not records:
            return "No interrupted runs detected."

        lines = [f"Found {len(records)} interrupted run(s):", ""]
        for record in records:
            lines.append(f"  {record.run_id}")
            lines.append(f"    Phase: {record.phase.value}")
            lines.append(f"    Last Agent: {record.last_agent or 'N/A'}")
            lines.append(f"    Classification: {record.classification.value}")
            lines.append(f"    Strategy: {record.resume_strategy.value}")
            lines.append(f"    Reason: {record.reason}")
            lines.append(f"    Session: {'exists' if record.session_exists else 'not found'}")
            lines.append("")
        return "\n".join(lines)
