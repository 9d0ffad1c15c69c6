"""
Tests for conductor.runtime.protocol - CRP/VCR human checkpoints.

These tests verify:
1. Raising a CRP blocks the run in waiting_human with a sequential id
2. A VCR is accepted only for the pending CRP and a valid option
3. CRPs and VCRs are write-once
4. Standing decisions answer repeated questions without blocking
"""

from __future__ import annotations

import pytest

from conductor.runtime import storage
from conductor.runtime.errors import (
    AgentValidationError,
    InvalidDecisionError,
    NotFoundError,
    PreconditionFailedError,
)
from conductor.runtime.protocol import CRPProtocol
from conductor.runtime.types import AwaitingHuman, CRPOption, Phase, RunState, Settled, Working

RUN_ID = "run-20250101-120000-abc123"
OPTIONS = [CRPOption("redis", "Redis"), CRPOption("memory", "In-process LRU")]
QUESTION = "Which cache backend should the client use?"


@pytest.fixture
def protocol(state_dir, events):
    return CRPProtocol(state_dir, events=events)


@pytest.fixture
def run(state_dir):
    state = RunState(run_id=RUN_ID, cursor=Working(Phase.BUILD))
    storage.write_run_state(state, state_dir)
    return state


def _load(state_dir) -> RunState:
    return storage.read_run_state(RUN_ID, state_dir)


# =============================================================================
# Raising
# =============================================================================


class TestRaiseCRP:
    """Tests for raise_crp."""

    def test_blocks_run(self, protocol, run, state_dir, recorder):
        crp = protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder", context="two candidates")

        assert crp.crp_id == "crp-001"
        assert crp.created_by == "builder"
        assert crp.auto_resolved_by is None
        state = _load(state_dir)
        assert state.cursor == AwaitingHuman("crp-001", Phase.BUILD)
        assert state.history[-1].result == "crp_raised:crp-001"
        assert recorder.kinds() == ["crp_raised"]

    def test_accepts_plain_dict_options(self, protocol, run):
        crp = protocol.raise_crp(RUN_ID, [{"id": "a", "label": "A"}, {"id": "b"}], QUESTION, "builder")
        assert crp.option_ids == ["a", "b"]

    def test_second_crp_while_pending_is_refused(self, protocol, run):
        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")
        with pytest.raises(PreconditionFailedError):
            protocol.raise_crp(RUN_ID, OPTIONS, "Another question?", "builder")

    def test_settled_run_cannot_raise(self, protocol, state_dir):
        storage.write_run_state(RunState(run_id=RUN_ID, cursor=Settled(Phase.READY_FOR_MERGE)), state_dir)
        with pytest.raises(PreconditionFailedError):
            protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "gatekeeper")

    @pytest.mark.parametrize(
        "options,question",
        [
            ([], QUESTION),
            (OPTIONS, "   "),
            ([CRPOption("a"), CRPOption("a")], QUESTION),
            ([CRPOption("")], QUESTION),
        ],
    )
    def test_malformed_crp_is_rejected(self, protocol, run, options, question):
        with pytest.raises(AgentValidationError):
            protocol.raise_crp(RUN_ID, options, question, "builder")

    def test_unknown_run(self, protocol):
        with pytest.raises(NotFoundError):
            protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")


# =============================================================================
# Responding
# =============================================================================


class TestSubmitVCR:
    """Tests for submit_vcr."""

    def test_returns_run_to_raising_phase(self, protocol, run, state_dir, recorder):
        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")
        vcr = protocol.submit_vcr(RUN_ID, "crp-001", "redis", "Shared across workers", notes="use db 2")

        assert vcr.vcr_id == "vcr-001"
        assert vcr.decision == "redis"
        assert vcr.additional_notes == "use db 2"
        state = _load(state_dir)
        assert state.cursor == Working(Phase.BUILD, resume_vcr="vcr-001")
        assert state.history[-1].result == "vcr_recorded:vcr-001"
        recorded = recorder.of_kind("vcr_recorded")
        assert recorded[0].resume_phase == Phase.BUILD

    def test_invalid_decision_lists_valid_options(self, protocol, run, state_dir):
        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")

        with pytest.raises(InvalidDecisionError) as exc_info:
            protocol.submit_vcr(RUN_ID, "crp-001", "sqlite", "")

        assert exc_info.value.valid_values == ["redis", "memory"]
        assert exc_info.value.field == "decision"
        assert _load(state_dir).pending_crp == "crp-001"
        assert storage.list_vcrs(RUN_ID, state_dir) == []

    def test_second_vcr_is_refused(self, protocol, run):
        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")
        protocol.submit_vcr(RUN_ID, "crp-001", "redis", "")

        with pytest.raises(PreconditionFailedError):
            protocol.submit_vcr(RUN_ID, "crp-001", "memory", "changed my mind")
        assert protocol.get_vcr_for_crp(RUN_ID, "crp-001").decision == "redis"

    def test_unknown_crp(self, protocol, run):
        with pytest.raises(NotFoundError):
            protocol.submit_vcr(RUN_ID, "crp-009", "redis", "")

    def test_non_pending_crp_is_refused(self, protocol, run, state_dir):
        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")
        protocol.submit_vcr(RUN_ID, "crp-001", "redis", "")
        protocol.raise_crp(RUN_ID, OPTIONS, "Eviction policy?", "builder")

        with pytest.raises(PreconditionFailedError):
            protocol.submit_vcr(RUN_ID, "crp-001", "memory", "")

    def test_pending_crp_lookup(self, protocol, run):
        assert protocol.get_pending_crp(RUN_ID) is None
        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")
        assert protocol.get_pending_crp(RUN_ID).crp_id == "crp-001"


# =============================================================================
# Standing decisions
# =============================================================================


class TestStandingDecisions:
    """Tests for applies_to_future VCRs."""

    def _answer(self, protocol, applies_to_future=True, question=QUESTION):
        crp = protocol.raise_crp(RUN_ID, OPTIONS, question, "builder")
        protocol.submit_vcr(RUN_ID, crp.crp_id, "memory", "Keep it simple", applies_to_future=applies_to_future)
        return crp

    def test_repeated_question_is_auto_resolved(self, protocol, run, state_dir, recorder):
        self._answer(protocol)

        crp = protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")

        assert crp.crp_id == "crp-002"
        assert crp.auto_resolved_by == "vcr-002"
        vcr = protocol.get_vcr(RUN_ID, "vcr-002")
        assert vcr.decision == "memory"
        assert vcr.auto_applied_from == "vcr-001"
        state = _load(state_dir)
        assert state.pending_crp is None
        assert state.cursor == Working(Phase.BUILD, resume_vcr="vcr-002")
        assert state.history[-1].result == "crp_auto_resolved:crp-002"
        assert "crp_auto_resolved" in recorder.kinds()

    def test_one_off_decision_does_not_stand(self, protocol, run, state_dir):
        self._answer(protocol, applies_to_future=False)

        crp = protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder")

        assert crp.auto_resolved_by is None
        assert _load(state_dir).pending_crp == "crp-002"

    def test_different_question_still_blocks(self, protocol, run, state_dir):
        self._answer(protocol)

        protocol.raise_crp(RUN_ID, OPTIONS, "Which serializer?", "builder")

        assert _load(state_dir).pending_crp == "crp-002"

    def test_exact_mode_is_case_sensitive(self, protocol, run, state_dir):
        self._answer(protocol)

        protocol.raise_crp(RUN_ID, OPTIONS, QUESTION.upper(), "builder")

        assert _load(state_dir).pending_crp == "crp-002"

    def test_normalized_mode_ignores_case_and_spacing(self, state_dir, events, run):
        protocol = CRPProtocol(state_dir, events=events, fingerprint_mode="normalized")
        self._answer(protocol)

        crp = protocol.raise_crp(RUN_ID, OPTIONS, "  which cache BACKEND should the   client use? ", "builder")

        assert crp.auto_resolved_by is not None

    def test_standing_decision_must_be_a_current_option(self, protocol, run, state_dir):
        self._answer(protocol)

        crp = protocol.raise_crp(RUN_ID, [CRPOption("redis"), CRPOption("memcached")], QUESTION, "builder")

        assert crp.auto_resolved_by is None
        assert _load(state_dir).pending_crp == "crp-002"

    def test_disallowed_standing_blocks(self, protocol, run, state_dir):
        self._answer(protocol)

        crp = protocol.raise_crp(RUN_ID, OPTIONS, QUESTION, "builder", allow_standing=False)

        assert crp.auto_resolved_by is None
        assert _load(state_dir).pending_crp == "crp-002"

    def test_standing_decisions_are_scoped_to_the_run(self, protocol, run, state_dir):
        self._answer(protocol)
        other = "run-20250101-130000-zzz999"
        storage.write_run_state(RunState(run_id=other, cursor=Working(Phase.BUILD)), state_dir)

        crp = protocol.raise_crp(other, OPTIONS, QUESTION, "builder")

        assert crp.auto_resolved_by is None

    def test_unknown_fingerprint_mode(self, state_dir):
        with pytest.raises(ValueError):
            CRPProtocol(state_dir, fingerprint_mode="fuzzy")
