"""
Tests for conductor.runtime.orchestrator - the run phase state machine.

These tests verify:
1. refine -> build -> verify -> gate -> ready_for_merge on the happy path
2. Gate FAIL loops back to build and respects the iteration limit
3. Agent failures are retried, then fail the run with an attributable error
4. CRPs block the run and VCRs resume the raising phase with the decision
5. Standing decisions keep later identical questions from blocking
6. stop / retry / complete transitions
"""

from __future__ import annotations

import asyncio

import pytest

from conductor.runtime import storage
from conductor.runtime.agents import AgentResult, CRPRequest, StubAgentInvoker, Verdict
from conductor.runtime.errors import (
    AgentCrashError,
    AgentValidationError,
    NotFoundError,
    PreconditionFailedError,
)
from conductor.runtime.types import AgentStatus, CRPOption, Phase, Settled, Working

QUESTION = "Should the client retry POST requests?"
OPTIONS = [CRPOption("never", "Never"), CRPOption("idempotent", "Only with an idempotency key")]


def _ask(question: str = QUESTION) -> AgentResult:
    return AgentResult(summary="need input", crp=CRPRequest(question=question, options=list(OPTIONS)))


def _verdict(verdict: Verdict) -> AgentResult:
    return AgentResult(summary=f"gate {verdict.value}", verdict=verdict)


def _run(orchestrator, briefing="Add retry to the HTTP client", **kwargs):
    state = orchestrator.start_run(briefing, **kwargs)
    return state.run_id, asyncio.run(orchestrator.advance(state.run_id))


def _agents_called(invoker: StubAgentInvoker):
    return [call.agent for call in invoker.calls]


# =============================================================================
# Lifecycle
# =============================================================================


class TestStartRun:
    """Tests for start_run."""

    def test_creates_run_in_refine(self, make_orchestrator, state_dir, recorder):
        orchestrator = make_orchestrator()
        state = orchestrator.start_run("Add retry to the HTTP client", max_iterations=5)

        assert state.phase == Phase.REFINE
        assert state.iteration == 1
        assert state.max_iterations == 5
        assert storage.run_exists(state.run_id, state_dir)
        assert recorder.kinds() == ["run_started"]

    def test_uses_default_iteration_limit(self, make_orchestrator):
        state = make_orchestrator(max_iterations=4).start_run("goal")
        assert state.max_iterations == 4

    def test_empty_briefing(self, make_orchestrator):
        with pytest.raises(AgentValidationError):
            make_orchestrator().start_run("  ")

    def test_custom_run_id(self, make_orchestrator):
        orchestrator = make_orchestrator()
        state = orchestrator.start_run("goal", run_id="run-20250101-120000-abc123")
        assert state.run_id == "run-20250101-120000-abc123"

        with pytest.raises(PreconditionFailedError):
            orchestrator.start_run("goal", run_id="run-20250101-120000-abc123")

    def test_malformed_run_id(self, make_orchestrator):
        with pytest.raises(AgentValidationError):
            make_orchestrator().start_run("goal", run_id="../../etc")

    def test_unknown_run(self, make_orchestrator):
        with pytest.raises(NotFoundError):
            make_orchestrator().get_state("run-20250101-120000-zzzzzz")


class TestHappyPath:
    """Tests for a run where every agent succeeds."""

    def test_reaches_ready_for_merge(self, make_orchestrator):
        invoker = StubAgentInvoker()
        run_id, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.READY_FOR_MERGE
        assert _agents_called(invoker) == ["refiner", "builder", "verifier", "gatekeeper"]
        assert [(h.phase, h.result) for h in state.history] == [
            (Phase.REFINE, "completed"),
            (Phase.BUILD, "completed"),
            (Phase.VERIFY, "completed"),
            (Phase.GATE, "PASS"),
        ]
        assert all(record.status == AgentStatus.COMPLETED for record in state.agents.values())

    def test_phase_changes_are_published_in_order(self, make_orchestrator, recorder):
        _run(make_orchestrator())

        assert [e.to_phase for e in recorder.of_kind("phase_changed")] == [
            Phase.BUILD,
            Phase.VERIFY,
            Phase.GATE,
            Phase.READY_FOR_MERGE,
        ]
        assert len(recorder.of_kind("run_ready_for_merge")) == 1

    def test_history_is_time_ordered(self, make_orchestrator):
        _, state = _run(make_orchestrator())
        stamps = [h.timestamp for h in state.history]
        assert stamps == sorted(stamps)

    def test_requests_carry_briefing_and_iteration(self, make_orchestrator):
        invoker = StubAgentInvoker()
        _run(make_orchestrator(invoker), briefing="Ship it")

        assert {call.briefing for call in invoker.calls} == {"Ship it"}
        assert {call.iteration for call in invoker.calls} == {1}
        assert all(call.decision is None for call in invoker.calls)

    def test_complete_run(self, make_orchestrator, recorder):
        orchestrator = make_orchestrator()
        run_id, _ = _run(orchestrator)

        state = orchestrator.complete_run(run_id)

        assert state.phase == Phase.COMPLETED
        assert state.history[-1].result == "completed"
        assert "run_completed" in recorder.kinds()

    def test_complete_requires_ready_for_merge(self, make_orchestrator):
        orchestrator = make_orchestrator()
        state = orchestrator.start_run("goal")
        with pytest.raises(PreconditionFailedError):
            orchestrator.complete_run(state.run_id)

    def test_advance_on_settled_run_is_a_no_op(self, make_orchestrator):
        invoker = StubAgentInvoker()
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)
        calls = len(invoker.calls)

        state = asyncio.run(orchestrator.advance(run_id))

        assert state.phase == Phase.READY_FOR_MERGE
        assert len(invoker.calls) == calls

    def test_execute_phase_requires_agent_phase(self, make_orchestrator):
        orchestrator = make_orchestrator()
        run_id, _ = _run(orchestrator)
        with pytest.raises(PreconditionFailedError):
            asyncio.run(orchestrator.execute_phase(run_id))


# =============================================================================
# Gate verdicts and iterations
# =============================================================================


class TestIterations:
    """Tests for the gate FAIL loop."""

    def test_fail_loops_back_to_build(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"gatekeeper": [_verdict(Verdict.FAIL), _verdict(Verdict.PASS)]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.READY_FOR_MERGE
        assert state.iteration == 2
        assert _agents_called(invoker) == [
            "refiner",
            "builder",
            "verifier",
            "gatekeeper",
            "builder",
            "verifier",
            "gatekeeper",
        ]
        assert invoker.calls[4].iteration == 2
        started = recorder.of_kind("iteration_started")
        assert [(e.iteration, e.max_iterations) for e in started] == [(2, 3)]
        assert (Phase.GATE, "FAIL") in [(h.phase, h.result) for h in state.history]

    def test_iteration_limit_fails_run(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"gatekeeper": [_verdict(Verdict.FAIL), _verdict(Verdict.FAIL)]})
        _, state = _run(make_orchestrator(invoker), max_iterations=2)

        assert state.phase == Phase.FAILED
        assert state.iteration == 2
        assert state.history[-1].result == "max_iterations_exceeded"
        assert state.errors[-1] == "gate: max_iterations_exceeded (iteration 2 of 2)"
        assert recorder.of_kind("run_failed")[0].phase == Phase.GATE

    def test_single_iteration_fails_on_first_fail(self, make_orchestrator):
        invoker = StubAgentInvoker({"gatekeeper": [_verdict(Verdict.FAIL)]})
        _, state = _run(make_orchestrator(invoker), max_iterations=1)

        assert state.phase == Phase.FAILED
        assert state.iteration == 1

    def test_retry_after_iteration_limit_restarts_build(self, make_orchestrator):
        invoker = StubAgentInvoker({"gatekeeper": [_verdict(Verdict.FAIL), _verdict(Verdict.FAIL)]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator, max_iterations=2)

        state = orchestrator.retry_failed_phase(run_id)

        assert state.cursor == Working(Phase.BUILD)
        assert state.iteration == 1
        assert state.history[-1].result == "retry_requested"
        assert asyncio.run(orchestrator.advance(run_id)).phase == Phase.READY_FOR_MERGE

    def test_minor_fail_goes_back_to_verify(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"gatekeeper": [_verdict(Verdict.MINOR_FAIL), _verdict(Verdict.PASS)]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.READY_FOR_MERGE
        assert state.iteration == 1
        assert state.minor_fix_attempts == 1
        assert _agents_called(invoker) == ["refiner", "builder", "verifier", "gatekeeper", "verifier", "gatekeeper"]
        started = recorder.of_kind("minor_fix_started")
        assert [(e.attempt, e.max_attempts) for e in started] == [(1, 2)]
        assert recorder.of_kind("iteration_started") == []
        assert (Phase.GATE, "MINOR_FAIL") in [(h.phase, h.result) for h in state.history]

    def test_minor_fail_past_allowance_starts_new_iteration(self, make_orchestrator, recorder):
        minor = _verdict(Verdict.MINOR_FAIL)
        invoker = StubAgentInvoker({"gatekeeper": [minor, minor, _verdict(Verdict.PASS)]})
        _, state = _run(make_orchestrator(invoker, max_minor_fix_attempts=1))

        assert state.phase == Phase.READY_FOR_MERGE
        assert state.iteration == 2
        assert state.minor_fix_attempts == 0
        assert _agents_called(invoker)[4:] == ["verifier", "gatekeeper", "builder", "verifier", "gatekeeper"]
        assert len(recorder.of_kind("minor_fix_started")) == 1
        assert [e.iteration for e in recorder.of_kind("iteration_started")] == [2]

    def test_minor_fail_on_last_iteration_fails_run(self, make_orchestrator):
        minor = _verdict(Verdict.MINOR_FAIL)
        invoker = StubAgentInvoker({"gatekeeper": [minor, minor, minor]})
        _, state = _run(make_orchestrator(invoker), max_iterations=1)

        assert state.phase == Phase.FAILED
        assert state.minor_fix_attempts == 2
        assert state.history[-1].result == "max_iterations_exceeded"

    def test_gate_without_verdict_is_a_validation_failure(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"gatekeeper": [AgentResult(summary="forgot"), _verdict(Verdict.PASS)]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.READY_FOR_MERGE
        failures = recorder.of_kind("retry_failed")
        assert [f.error_kind.value for f in failures] == ["validation"]

    def test_needs_human_without_checkpoint_is_rejected(self, make_orchestrator):
        invoker = StubAgentInvoker({"gatekeeper": [_verdict(Verdict.NEEDS_HUMAN), _verdict(Verdict.NEEDS_HUMAN)]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.FAILED
        assert "NEEDS_HUMAN" in state.errors[-1]


# =============================================================================
# Agent failures
# =============================================================================


class TestAgentFailures:
    """Tests for retries and failure attribution."""

    def test_crash_is_retried(self, make_orchestrator, sleeps):
        invoker = StubAgentInvoker({"builder": [AgentCrashError("pane died")]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.READY_FOR_MERGE
        assert _agents_called(invoker).count("builder") == 2
        assert len(sleeps) == 1

    def test_unsuccessful_result_is_retried(self, make_orchestrator):
        invoker = StubAgentInvoker({"verifier": [AgentResult(success=False, error="tests missing")]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.READY_FOR_MERGE
        assert _agents_called(invoker).count("verifier") == 2

    def test_exhaustion_fails_run_in_phase(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"builder": [AgentCrashError("boom"), AgentCrashError("boom")]})
        _, state = _run(make_orchestrator(invoker, max_attempts=2))

        assert state.cursor == Settled(Phase.FAILED, failed_in=Phase.BUILD)
        assert state.errors == ["build: boom (after 2 attempts)"]
        assert state.agents["builder"].status == AgentStatus.FAILED
        assert state.agents["builder"].error == "boom (after 2 attempts)"
        assert state.history[-1].result == "failed"
        assert "verifier" not in _agents_called(invoker)
        assert recorder.of_kind("agent_failed")[0].agent == "builder"

    def test_retry_failed_phase_resumes_same_phase(self, make_orchestrator):
        invoker = StubAgentInvoker({"builder": [AgentCrashError("boom"), AgentCrashError("boom")]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)

        state = orchestrator.retry_failed_phase(run_id)
        assert state.cursor == Working(Phase.BUILD)
        assert state.agents["builder"].status == AgentStatus.PENDING

        state = asyncio.run(orchestrator.advance(run_id))
        assert state.phase == Phase.READY_FOR_MERGE
        assert _agents_called(invoker).count("refiner") == 1

    def test_retry_requires_failed_run(self, make_orchestrator):
        orchestrator = make_orchestrator()
        run_id, _ = _run(orchestrator)
        with pytest.raises(PreconditionFailedError):
            orchestrator.retry_failed_phase(run_id)

    def test_timeout_is_retried_then_fails(self, make_orchestrator):
        invoker = StubAgentInvoker(delay=0.05)
        _, state = _run(make_orchestrator(invoker, timeouts={"builder": 0.01}))

        assert state.cursor == Settled(Phase.FAILED, failed_in=Phase.BUILD)
        assert "timed out" in state.errors[-1]
        assert _agents_called(invoker).count("builder") == 2

    def test_non_recoverable_error_propagates(self, make_orchestrator, state_dir):
        invoker = StubAgentInvoker({"refiner": [PreconditionFailedError("workspace locked")]})
        orchestrator = make_orchestrator(invoker)
        state = orchestrator.start_run("goal")

        with pytest.raises(PreconditionFailedError):
            asyncio.run(orchestrator.advance(state.run_id))

        state = orchestrator.get_state(state.run_id)
        assert state.phase == Phase.REFINE
        assert state.agents["refiner"].status == AgentStatus.FAILED
        assert state.errors == ["refine: workspace locked"]
        assert len(invoker.calls) == 1


# =============================================================================
# Human checkpoints
# =============================================================================


class TestCheckpoints:
    """Tests for CRP raising, VCR submission and resumption."""

    def test_crp_blocks_run(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"builder": [_ask()]})
        _, state = _run(make_orchestrator(invoker))

        assert state.phase == Phase.WAITING_HUMAN
        assert state.pending_crp == "crp-001"
        assert [h.result for h in state.history][-2:] == ["needs_human", "crp_raised:crp-001"]
        assert recorder.of_kind("phase_changed")[-1].to_phase == Phase.WAITING_HUMAN
        assert "verifier" not in _agents_called(invoker)

    def test_vcr_resumes_raising_phase_with_decision(self, make_orchestrator):
        invoker = StubAgentInvoker({"builder": [_ask()]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)

        orchestrator.protocol.submit_vcr(run_id, "crp-001", "idempotent", "Safe with keys", notes="header X-Key")
        state = asyncio.run(orchestrator.resume_run(run_id))

        assert state.phase == Phase.READY_FOR_MERGE
        resumed = invoker.calls[2]
        assert resumed.agent == "builder"
        assert resumed.decision["decision"] == "idempotent"
        assert resumed.decision["vcr_id"] == "vcr-001"
        assert resumed.decision["notes"] == "header X-Key"
        assert resumed.decision["question"] == QUESTION
        assert invoker.calls[3].decision is None

    def test_resume_without_vcr_is_refused(self, make_orchestrator):
        invoker = StubAgentInvoker({"builder": [_ask()]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)

        with pytest.raises(PreconditionFailedError):
            asyncio.run(orchestrator.resume_run(run_id))

    def test_gatekeeper_can_ask_for_a_human(self, make_orchestrator):
        needs_human = AgentResult(
            verdict=Verdict.NEEDS_HUMAN,
            crp=CRPRequest(question="Accept the flaky test?", options=[CRPOption("yes"), CRPOption("no")]),
        )
        invoker = StubAgentInvoker({"gatekeeper": [needs_human, _verdict(Verdict.PASS)]})
        orchestrator = make_orchestrator(invoker)
        run_id, state = _run(orchestrator)
        assert state.phase == Phase.WAITING_HUMAN

        orchestrator.protocol.submit_vcr(run_id, state.pending_crp, "yes", "Known flake")
        state = asyncio.run(orchestrator.resume_run(run_id))

        assert state.phase == Phase.READY_FOR_MERGE
        assert invoker.calls[-1].agent == "gatekeeper"
        assert invoker.calls[-1].decision["decision"] == "yes"

    def test_malformed_checkpoint_is_a_validation_failure(self, make_orchestrator, state_dir):
        malformed = AgentResult(crp=CRPRequest(question="Pick", options=[]))
        invoker = StubAgentInvoker({"refiner": [malformed, malformed]})
        _, state = _run(make_orchestrator(invoker))

        assert state.cursor == Settled(Phase.FAILED, failed_in=Phase.REFINE)
        assert storage.list_crps(state.run_id, state_dir) == []

    def test_standing_decision_avoids_second_block(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker(
            {
                "builder": [_ask(), AgentResult(), _ask(), AgentResult()],
                "gatekeeper": [_verdict(Verdict.FAIL), _verdict(Verdict.PASS)],
            }
        )
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)
        orchestrator.protocol.submit_vcr(run_id, "crp-001", "never", "Not safe", applies_to_future=True)

        state = asyncio.run(orchestrator.resume_run(run_id))

        assert state.phase == Phase.READY_FOR_MERGE
        assert state.iteration == 2
        assert len(recorder.of_kind("crp_raised")) == 1
        assert len(recorder.of_kind("crp_auto_resolved")) == 1
        auto = orchestrator.protocol.get_vcr(run_id, "vcr-002")
        assert auto.auto_applied_from == "vcr-001"
        builder_calls = [c for c in invoker.calls if c.agent == "builder"]
        assert builder_calls[-1].decision["vcr_id"] == "vcr-002"
        assert builder_calls[-1].decision["decision"] == "never"

    def test_repeated_question_after_answer_goes_to_human(self, make_orchestrator):
        invoker = StubAgentInvoker({"builder": [_ask(), _ask()]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)
        orchestrator.protocol.submit_vcr(run_id, "crp-001", "never", "", applies_to_future=True)

        state = asyncio.run(orchestrator.resume_run(run_id))

        assert state.phase == Phase.WAITING_HUMAN
        assert state.pending_crp == "crp-002"


# =============================================================================
# Stop
# =============================================================================


class TestStopRun:
    """Tests for stop_run."""

    def test_stop_waiting_run(self, make_orchestrator, recorder):
        invoker = StubAgentInvoker({"verifier": [_ask()]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)

        state = orchestrator.stop_run(run_id)

        assert state.cursor == Settled(Phase.FAILED, failed_in=Phase.VERIFY)
        assert state.history[-1].result == "stopped_by_user"
        assert state.errors[-1] == "waiting_human: stopped_by_user"
        assert recorder.of_kind("run_stopped")[0].reason == "stopped_by_user"

    def test_stop_terminal_run_is_refused(self, make_orchestrator):
        orchestrator = make_orchestrator()
        run_id, _ = _run(orchestrator)
        orchestrator.complete_run(run_id)

        with pytest.raises(PreconditionFailedError):
            orchestrator.stop_run(run_id)

    def test_stop_interrupts_in_flight_agent(self, make_orchestrator, host_factory):
        invoker = StubAgentInvoker(delay=60)
        orchestrator = make_orchestrator(invoker)

        async def scenario():
            state = orchestrator.start_run("goal")
            run_id = state.run_id
            host = host_factory.set_live(run_id, "refiner")
            task = asyncio.ensure_future(orchestrator.advance(run_id))
            while orchestrator.get_state(run_id).agents["refiner"].status != AgentStatus.RUNNING:
                await asyncio.sleep(0.001)

            orchestrator.stop_run(run_id)
            final = await asyncio.wait_for(task, timeout=5)
            return final, host

        state, host = asyncio.run(scenario())

        assert state.cursor == Settled(Phase.FAILED, failed_in=Phase.REFINE)
        assert state.agents["refiner"].status == AgentStatus.FAILED
        assert state.agents["refiner"].error == "stopped_by_user"
        assert host.interrupted == ["refiner"]
        assert len(invoker.calls) == 1

    def test_stopped_run_can_be_retried(self, make_orchestrator):
        invoker = StubAgentInvoker({"builder": [_ask()]})
        orchestrator = make_orchestrator(invoker)
        run_id, _ = _run(orchestrator)
        orchestrator.stop_run(run_id)

        state = orchestrator.retry_failed_phase(run_id)

        assert state.cursor == Working(Phase.BUILD)
