"""
orchestrator.py - Phase state machine for four-agent pipeline runs

The orchestrator drives a run through refine -> build -> verify -> gate and
settles it in ready_for_merge, waiting_human or failed. Each agent phase is
executed once per ``execute_phase`` call through the RetryExecutor, with a
per-agent timeout.

Gate verdicts:
    PASS         -> ready_for_merge
    MINOR_FAIL   -> the gatekeeper patched small issues; back to verify in the
                    same iteration, treated as FAIL once the run has used
                    its minor-fix allowance
    FAIL         -> iteration + 1 and back to build, or failed when the
                    iteration limit would be exceeded
    NEEDS_HUMAN  -> a CRP is raised and the run waits for a VCR

waiting_human returns to the phase that raised the CRP once a VCR is
recorded; ``resume_run`` re-enters that phase with the human decision.

Usage:
    orchestrator = Orchestrator(state_dir, StubAgentInvoker())
    state = orchestrator.start_run("Add retry to the HTTP client")
    state = asyncio.run(orchestrator.advance(state.run_id))
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import storage
from .agents import AgentInvoker, AgentRequest, AgentResult, Verdict
from .errors import (
    AgentTimeoutError,
    AgentValidationError,
    ConductorError,
    NotFoundError,
    PreconditionFailedError,
    RetryExhaustedError,
    RunCancelledError,
)
from .events import EventStream
from .process_host import ProcessHostFactory
from .protocol import CRPProtocol
from .retry import CancelSignals, RetryExecutor, run_cancellable
from .types import (
    NEXT_PHASE,
    PHASE_TO_AGENT,
    AgentCompleted,
    AgentFailed,
    AgentStarted,
    AgentStatus,
    AwaitingHuman,
    IterationStarted,
    MinorFixStarted,
    Phase,
    PhaseChanged,
    RetryContext,
    RunCompleted,
    RunFailed,
    RunId,
    RunReadyForMerge,
    RunStarted,
    RunState,
    RunStopped,
    Settled,
    Working,
    _utcnow,
    generate_run_id,
    is_valid_run_id,
    question_fingerprint,
)

# Module logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3
DEFAULT_MAX_MINOR_FIX_ATTEMPTS = 2

DEFAULT_AGENT_TIMEOUTS: Dict[str, float] = {
    "refiner": 300.0,
    "builder": 600.0,
    "verifier": 300.0,
    "gatekeeper": 300.0,
}

STOPPED_BY_USER = "stopped_by_user"
MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"

# Agents re-run in every new iteration
_ITERATION_AGENTS = ("builder", "verifier", "gatekeeper")

# Agents re-run after a minor fix
_MINOR_FIX_AGENTS = ("verifier", "gatekeeper")


class Orchestrator:
    """Drives pipeline runs through their phases.

    Attributes:
        state_dir: Root of persisted state.
        invoker: AgentInvoker running the agents.
        retry: RetryExecutor wrapping each agent execution.
        protocol: CRPProtocol used when agents ask for human decisions.
        events: Typed event stream.
    """

    def __init__(
        self,
        state_dir: Path,
        invoker: AgentInvoker,
        retry: Optional[RetryExecutor] = None,
        protocol: Optional[CRPProtocol] = None,
        events: Optional[EventStream] = None,
        host_factory: Optional[ProcessHostFactory] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        timeouts: Optional[Dict[str, float]] = None,
        max_minor_fix_attempts: int = DEFAULT_MAX_MINOR_FIX_ATTEMPTS,
    ):
        self.state_dir = Path(state_dir)
        self.invoker = invoker
        self.events = events or EventStream()
        self.retry = retry or RetryExecutor(events=self.events)
        self.protocol = protocol or CRPProtocol(self.state_dir, events=self.events)
        self._host_factory = host_factory
        self.max_iterations = max(1, max_iterations)
        self.max_minor_fix_attempts = max(0, max_minor_fix_attempts)
        self.timeouts = dict(DEFAULT_AGENT_TIMEOUTS)
        self.timeouts.update(timeouts or {})

        # Cancel signals of in-flight phase executions
        self._cancel = CancelSignals()

    # -------------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------------

    def get_state(self, run_id: RunId) -> RunState:
        """Load a run.

        Raises:
            NotFoundError: If the run does not exist or its record is unreadable.
        """
        state = storage.read_run_state(run_id, self.state_dir)
        if state is None:
            raise NotFoundError("run", run_id)
        return state

    def list_runs(self) -> List[RunState]:
        return storage.read_all_run_states(self.state_dir)

    def _save(self, state: RunState, event_type: str, agent: Optional[str] = None) -> RunState:
        state.touch(event_type, agent)
        storage.write_run_state(state, self.state_dir)
        return state

    def _phase_changed(self, run_id: RunId, from_phase: Phase, to_phase: Phase) -> None:
        if from_phase != to_phase:
            logger.info("Run %s: %s -> %s", run_id, from_phase.value, to_phase.value)
            self.events.publish(PhaseChanged(run_id=run_id, from_phase=from_phase, to_phase=to_phase))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_run(
        self,
        briefing: str,
        max_iterations: Optional[int] = None,
        run_id: Optional[RunId] = None,
    ) -> RunState:
        """Create and persist a new run in the refine phase, iteration 1.

        Raises:
            AgentValidationError: Empty briefing or malformed ``run_id``.
            PreconditionFailedError: ``run_id`` is already taken.
        """
        if not briefing or not briefing.strip():
            raise AgentValidationError("briefing must not be empty")
        if run_id is not None and not is_valid_run_id(run_id):
            raise AgentValidationError(f"Invalid run id: {run_id!r}", {"run_id": run_id})
        run_id = run_id or generate_run_id()
        if storage.run_exists(run_id, self.state_dir):
            raise PreconditionFailedError(f"Run {run_id} already exists", {"run_id": run_id})

        state = RunState(
            run_id=run_id,
            briefing=briefing,
            max_iterations=max_iterations or self.max_iterations,
            max_minor_fix_attempts=self.max_minor_fix_attempts,
        )
        self._save(state, "run_started")
        logger.info("Started run %s (max_iterations=%d)", run_id, state.max_iterations)
        self.events.publish(RunStarted(run_id=run_id, max_iterations=state.max_iterations))
        return state

    async def execute_phase(self, run_id: RunId) -> RunState:
        """Execute the current agent phase once and apply its outcome.

        Raises:
            NotFoundError: Unknown run.
            PreconditionFailedError: The run is not in an agent phase.
            ConductorError: Non-retryable errors raised by the agent.
        """
        with storage.get_lock(run_id):
            state = self.get_state(run_id)
            if not isinstance(state.cursor, Working):
                raise PreconditionFailedError(
                    f"Run {run_id} is {state.phase.value}, not in an agent phase",
                    {"run_id": run_id, "phase": state.phase.value},
                )
            phase = state.cursor.phase
            agent = PHASE_TO_AGENT[phase]
            decision = self._decision_for(state)

            record = state.agents[agent]
            record.status = AgentStatus.RUNNING
            record.started_at = _utcnow()
            record.completed_at = None
            record.error = None
            self._save(state, "agent_started", agent)

        self.events.publish(AgentStarted(run_id=run_id, agent=agent))
        logger.debug("Run %s: executing %s (iteration %d)", run_id, agent, state.iteration)

        request = AgentRequest(
            run_id=run_id,
            agent=agent,
            phase=phase,
            iteration=state.iteration,
            briefing=state.briefing,
            decision=decision,
        )
        cancel_event = self._cancel.arm(run_id)
        try:
            result = await self.retry.execute_with_retry(
                lambda: self._invoke(request, cancel_event),
                RetryContext(run_id=run_id, agent=agent),
                cancel_event=cancel_event,
            )
        except RetryExhaustedError as e:
            return self._fail_phase(run_id, phase, agent, e)
        except RunCancelledError:
            logger.info("Run %s: %s execution abandoned after stop", run_id, agent)
            return self.get_state(run_id)
        except ConductorError as e:
            self._mark_agent_failed(run_id, phase, agent, str(e))
            raise
        finally:
            self._cancel.disarm(run_id, cancel_event)

        return self._apply_result(run_id, phase, agent, result, decision)

    async def advance(self, run_id: RunId) -> RunState:
        """Execute phases until the run leaves the agent phases.

        Returns when the run is waiting for a human, ready for merge, failed
        or completed.
        """
        while True:
            state = self.get_state(run_id)
            if not isinstance(state.cursor, Working):
                return state
            state = await self.execute_phase(run_id)

    async def resume_run(self, run_id: RunId) -> RunState:
        """Re-enter the phase that raised the last CRP with its VCR decision.

        Raises:
            PreconditionFailedError: No freshly recorded VCR to resume from
                (the run is still waiting, settled or already resumed).
        """
        state = self.get_state(run_id)
        if not isinstance(state.cursor, Working) or state.cursor.resume_vcr is None:
            raise PreconditionFailedError(
                f"Run {run_id} has no recorded decision to resume from (phase={state.phase.value})",
                {"run_id": run_id, "phase": state.phase.value, "pending_crp": state.pending_crp},
            )
        logger.info("Resuming run %s in %s with %s", run_id, state.phase.value, state.cursor.resume_vcr)
        return await self.advance(run_id)

    def stop_run(self, run_id: RunId, reason: str = STOPPED_BY_USER) -> RunState:
        """Stop a run: abandon retries, interrupt the live agent, mark failed.

        Raises:
            PreconditionFailedError: The run is already completed or failed.
        """
        with storage.get_lock(run_id):
            state = self.get_state(run_id)
            if state.is_terminal:
                raise PreconditionFailedError(
                    f"Run {run_id} is already {state.phase.value}",
                    {"run_id": run_id, "phase": state.phase.value},
                )
            from_phase = state.phase
            agent = state.current_agent
            failed_in: Optional[Phase] = None
            if isinstance(state.cursor, Working):
                failed_in = state.cursor.phase
            elif isinstance(state.cursor, AwaitingHuman):
                failed_in = state.cursor.raised_in

            state.cursor = Settled(Phase.FAILED, failed_in=failed_in)
            if agent and state.agents[agent].status == AgentStatus.RUNNING:
                state.agents[agent].status = AgentStatus.FAILED
                state.agents[agent].completed_at = _utcnow()
                state.agents[agent].error = reason
            state.add_error(f"{from_phase.value}: {reason}")
            state.add_history(from_phase, reason)
            self._save(state, "run_stopped", agent)

        self._cancel.signal(run_id)
        if agent and self._host_factory is not None:
            host = self._host_factory(run_id)
            if host.is_pane_active(agent):
                host.interrupt(agent)

        logger.info("Stopped run %s in %s: %s", run_id, from_phase.value, reason)
        self.events.publish(RunStopped(run_id=run_id, reason=reason))
        self._phase_changed(run_id, from_phase, Phase.FAILED)
        return state

    def retry_failed_phase(self, run_id: RunId) -> RunState:
        """Put a failed run back into the phase that failed.

        A run that failed on the iteration limit restarts at build with
        fresh iteration accounting. Call ``advance`` to execute.

        Raises:
            PreconditionFailedError: The run is not failed or the failing
                phase is unknown.
        """
        with storage.get_lock(run_id):
            state = self.get_state(run_id)
            if not isinstance(state.cursor, Settled) or state.cursor.failed_in is None:
                raise PreconditionFailedError(
                    f"Run {run_id} has no failed phase to retry (phase={state.phase.value})",
                    {"run_id": run_id, "phase": state.phase.value},
                )
            phase = state.cursor.failed_in
            hit_limit = bool(state.history) and state.history[-1].result == MAX_ITERATIONS_EXCEEDED
            if hit_limit:
                phase = Phase.BUILD
                state.iteration = 1
                state.minor_fix_attempts = 0
                self._reset_agents(state, _ITERATION_AGENTS)

            agent = PHASE_TO_AGENT[phase]
            self._reset_agents(state, (agent,))
            self.retry.reset_attempts(RetryContext(run_id=run_id, agent=agent))
            state.cursor = Working(phase)
            state.add_history(phase, "retry_requested")
            self._save(state, "phase_retry", agent)

        logger.info("Run %s: retrying %s%s", run_id, phase.value, " (iterations reset)" if hit_limit else "")
        self._phase_changed(run_id, Phase.FAILED, phase)
        return state

    def complete_run(self, run_id: RunId) -> RunState:
        """ready_for_merge -> completed."""
        with storage.get_lock(run_id):
            state = self.get_state(run_id)
            if state.phase != Phase.READY_FOR_MERGE:
                raise PreconditionFailedError(
                    f"Run {run_id} is {state.phase.value}, not ready_for_merge",
                    {"run_id": run_id, "phase": state.phase.value},
                )
            state.cursor = Settled(Phase.COMPLETED)
            state.add_history(Phase.COMPLETED, "completed")
            self._save(state, "run_completed")

        self.events.publish(RunCompleted(run_id=run_id))
        self._phase_changed(run_id, Phase.READY_FOR_MERGE, Phase.COMPLETED)
        return state

    # -------------------------------------------------------------------------
    # Agent execution
    # -------------------------------------------------------------------------

    async def _invoke(self, request: AgentRequest, cancel_event: asyncio.Event) -> AgentResult:
        """One attempt: run the agent with its timeout, abandon on stop."""
        timeout = self.timeouts.get(request.agent)
        try:
            result = await run_cancellable(
                asyncio.wait_for(self.invoker.invoke(request), timeout),
                cancel_event,
                RunCancelledError(
                    f"{request.agent} interrupted", {"run_id": request.run_id, "agent": request.agent}
                ),
            )
        except asyncio.TimeoutError as e:
            raise AgentTimeoutError(
                f"{request.agent} timed out after {timeout:g}s",
                {"run_id": request.run_id, "agent": request.agent, "timeout": timeout},
            ) from e

        if not result.success:
            raise AgentValidationError(
                result.error or f"{request.agent} reported failure",
                {"run_id": request.run_id, "agent": request.agent},
            )
        if result.crp is not None:
            option_ids = [option.id for option in result.crp.options]
            if (
                not result.crp.question.strip()
                or not option_ids
                or not all(option_ids)
                or len(set(option_ids)) != len(option_ids)
            ):
                raise AgentValidationError(
                    f"{request.agent} raised a malformed checkpoint",
                    {"run_id": request.run_id, "agent": request.agent},
                )
        elif request.phase == Phase.GATE:
            if result.verdict is None:
                raise AgentValidationError("gatekeeper returned no verdict", {"run_id": request.run_id})
            if result.verdict == Verdict.NEEDS_HUMAN:
                raise AgentValidationError(
                    "gatekeeper returned NEEDS_HUMAN without a checkpoint", {"run_id": request.run_id}
                )
        return result

    def _decision_for(self, state: RunState) -> Optional[Dict[str, Any]]:
        """Human decision queued for the next execution of the current phase."""
        if not isinstance(state.cursor, Working) or state.cursor.resume_vcr is None:
            return None
        vcr = storage.read_vcr(state.run_id, state.cursor.resume_vcr, self.state_dir)
        if vcr is None:
            logger.warning("Run %s: queued VCR %s is unreadable", state.run_id, state.cursor.resume_vcr)
            return None
        crp = storage.read_crp(state.run_id, vcr.crp_id, self.state_dir)
        return {
            "crp_id": vcr.crp_id,
            "vcr_id": vcr.vcr_id,
            "question": crp.question if crp else "",
            "decision": vcr.decision,
            "rationale": vcr.rationale,
            "notes": vcr.additional_notes,
        }

    def _apply_result(
        self,
        run_id: RunId,
        phase: Phase,
        agent: str,
        result: AgentResult,
        decision: Optional[Dict[str, Any]],
    ) -> RunState:
        with storage.get_lock(run_id):
            state = self.get_state(run_id)
            if not (isinstance(state.cursor, Working) and state.cursor.phase == phase):
                logger.info("Run %s moved to %s during %s; result discarded", run_id, state.phase.value, agent)
                return state

            record = state.agents[agent]
            record.status = AgentStatus.COMPLETED
            record.completed_at = _utcnow()
            record.error = None

            if result.crp is not None:
                state.cursor = Working(phase)
                state.add_history(phase, "needs_human")
                self._save(state, "agent_completed", agent)
            else:
                self._transition_on_success(state, phase, agent, result)

        self.events.publish(AgentCompleted(run_id=run_id, agent=agent))

        if result.crp is None:
            self._publish_transition(state, phase)
            return state

        # An agent asking the question it was just given an answer to is
        # put in front of a human instead of looping on the standing decision.
        repeated = bool(
            decision
            and question_fingerprint(decision.get("question", ""), self.protocol.fingerprint_mode)
            == question_fingerprint(result.crp.question, self.protocol.fingerprint_mode)
        )
        crp = self.protocol.raise_crp(
            run_id,
            result.crp.options,
            result.crp.question,
            agent,
            context=result.crp.context,
            allow_standing=not repeated,
        )
        state = self.get_state(run_id)
        if crp.auto_resolved_by is None:
            self._phase_changed(run_id, phase, Phase.WAITING_HUMAN)
        return state

    def _transition_on_success(self, state: RunState, phase: Phase, agent: str, result: AgentResult) -> None:
        if phase != Phase.GATE:
            state.cursor = Working(NEXT_PHASE[phase])
            state.add_history(phase, "completed")
            self._save(state, "agent_completed", agent)
            return

        if result.verdict == Verdict.PASS:
            state.cursor = Settled(Phase.READY_FOR_MERGE)
            state.add_history(phase, Verdict.PASS.value)
            self._save(state, "run_ready_for_merge", agent)
            return

        if result.verdict == Verdict.MINOR_FAIL and state.minor_fix_attempts < state.max_minor_fix_attempts:
            state.minor_fix_attempts += 1
            state.cursor = Working(Phase.VERIFY)
            state.add_history(phase, Verdict.MINOR_FAIL.value)
            self._reset_agents(state, _MINOR_FIX_AGENTS)
            self._save(state, "minor_fix_started", agent)
            return

        # FAIL, or MINOR_FAIL past the minor-fix allowance
        if state.iteration + 1 > state.max_iterations:
            state.cursor = Settled(Phase.FAILED, failed_in=Phase.GATE)
            state.add_error(
                f"{phase.value}: {MAX_ITERATIONS_EXCEEDED} "
                f"(iteration {state.iteration} of {state.max_iterations})"
            )
            state.add_history(phase, MAX_ITERATIONS_EXCEEDED)
            self._save(state, "run_failed", agent)
            return

        state.iteration += 1
        state.minor_fix_attempts = 0
        state.cursor = Working(Phase.BUILD)
        state.add_history(phase, result.verdict.value)
        self._reset_agents(state, _ITERATION_AGENTS)
        self._save(state, "iteration_started", agent)

    def _publish_transition(self, state: RunState, from_phase: Phase) -> None:
        run_id = state.run_id
        to_phase = state.phase
        if to_phase == Phase.READY_FOR_MERGE:
            logger.info("Run %s ready for merge (iteration %d)", run_id, state.iteration)
            self.events.publish(RunReadyForMerge(run_id=run_id, iteration=state.iteration))
        elif to_phase == Phase.FAILED:
            logger.warning("Run %s failed: %s", run_id, state.errors[-1] if state.errors else "")
            self.events.publish(
                RunFailed(run_id=run_id, phase=from_phase, error=state.errors[-1] if state.errors else "")
            )
        elif from_phase == Phase.GATE and to_phase == Phase.VERIFY:
            logger.info(
                "Run %s: minor fix %d/%d, re-verifying",
                run_id,
                state.minor_fix_attempts,
                state.max_minor_fix_attempts,
            )
            self.events.publish(
                MinorFixStarted(
                    run_id=run_id,
                    attempt=state.minor_fix_attempts,
                    max_attempts=state.max_minor_fix_attempts,
                )
            )
        elif from_phase == Phase.GATE and to_phase == Phase.BUILD:
            logger.info("Run %s: iteration %d/%d", run_id, state.iteration, state.max_iterations)
            self.events.publish(
                IterationStarted(run_id=run_id, iteration=state.iteration, max_iterations=state.max_iterations)
            )
        self._phase_changed(run_id, from_phase, to_phase)

    def _fail_phase(self, run_id: RunId, phase: Phase, agent: str, error: RetryExhaustedError) -> RunState:
        with storage.get_lock(run_id):
            state = self.get_state(run_id)
            if not (isinstance(state.cursor, Working) and state.cursor.phase == phase):
                return state
            message = f"{phase.value}: {error}"
            state.cursor = Settled(Phase.FAILED, failed_in=phase)
            record = state.agents[agent]
            record.status = AgentStatus.FAILED
            record.completed_at = _utcnow()
            record.error = str(error)
            state.add_error(message)
            state.add_history(phase, "failed")
            self._save(state, "agent_failed", agent)

        logger.warning("Run %s failed in %s: %s", run_id, phase.value, error)
        self.events.publish(AgentFailed(run_id=run_id, agent=agent, error=str(error)))
        self.events.publish(RunFailed(run_id=run_id, phase=phase, error=message))
        self._phase_changed(run_id, phase, Phase.FAILED)
        return state

    def _mark_agent_failed(self, run_id: RunId, phase: Phase, agent: str, message: str) -> None:
        with storage.get_lock(run_id):
            state = storage.read_run_state(run_id, self.state_dir)
            if state is None or not (isinstance(state.cursor, Working) and state.cursor.phase == phase):
                return
            record = state.agents[agent]
            record.status = AgentStatus.FAILED
            record.completed_at = _utcnow()
            record.error = message
            state.add_error(f"{phase.value}: {message}")
            self._save(state, "agent_failed", agent)
        self.events.publish(AgentFailed(run_id=run_id, agent=agent, error=message))

    @staticmethod
    def _reset_agents(state: RunState, agents) -> None:
        for name in agents:
            record = state.agents[name]
            record.status = AgentStatus.PENDING
            record.started_at = None
            record.completed_at = None
            record.error = None
