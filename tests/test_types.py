"""
Tests for conductor.runtime.types - run cursor, ids and serialization.

These tests verify:
1. Run ids follow run-YYYYMMDD-HHMMSS-xxxxxx
2. The cursor makes illegal phase/pending-CRP combinations unrepresentable
3. RunState rejects iteration counters outside 1..max_iterations
4. Persisted records with illegal combinations are refused on load
5. Plans are numbered into phases and task ids
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conductor.runtime.types import (
    AwaitingHuman,
    Mission,
    Phase,
    RunState,
    Settled,
    TaskStatus,
    Working,
    _datetime_to_iso,
    _iso_to_datetime,
    dependency_problems,
    generate_mission_id,
    generate_run_id,
    is_valid_mission_id,
    is_valid_run_id,
    make_crp_id,
    mission_from_dict,
    mission_to_dict,
    phases_from_plan,
    question_fingerprint,
    run_state_from_dict,
    run_state_to_dict,
)

RUN_ID = "run-20250101-120000-abc123"


# =============================================================================
# Identifiers
# =============================================================================


class TestIdentifiers:
    """Tests for id generation and validation."""

    def test_generated_run_id_is_valid(self):
        assert is_valid_run_id(generate_run_id())

    def test_generated_run_ids_differ(self):
        assert len({generate_run_id() for _ in range(20)}) == 20

    @pytest.mark.parametrize(
        "run_id",
        [
            "",
            "run-2025-abc",
            "run-20250101-120000-ABC123",
            "../run-20250101-120000-abc123",
            "run-20250101-120000-abc12",
            "run-20250101-120000-abc123\n",
        ],
    )
    def test_rejects_malformed_run_ids(self, run_id):
        assert not is_valid_run_id(run_id)

    def test_mission_id(self):
        assert is_valid_mission_id(generate_mission_id())
        assert not is_valid_mission_id(RUN_ID)
        assert not is_valid_mission_id(generate_mission_id() + "\n")

    def test_crp_ids_are_zero_padded(self):
        assert make_crp_id(1) == "crp-001"
        assert make_crp_id(12) == "crp-012"


# =============================================================================
# Cursor
# =============================================================================


class TestCursor:
    """Tests for the Working / AwaitingHuman / Settled cursor variants."""

    def test_working_requires_agent_phase(self):
        with pytest.raises(ValueError):
            Working(Phase.READY_FOR_MERGE)

    def test_awaiting_human_requires_crp(self):
        with pytest.raises(ValueError):
            AwaitingHuman(crp_id="", raised_in=Phase.GATE)

    def test_awaiting_human_requires_agent_phase(self):
        with pytest.raises(ValueError):
            AwaitingHuman(crp_id="crp-001", raised_in=Phase.FAILED)

    def test_failed_in_only_on_failed(self):
        with pytest.raises(ValueError):
            Settled(Phase.READY_FOR_MERGE, failed_in=Phase.BUILD)
        assert Settled(Phase.FAILED, failed_in=Phase.BUILD).failed_in == Phase.BUILD

    def test_derived_views(self):
        state = RunState(run_id=RUN_ID, cursor=AwaitingHuman("crp-001", Phase.VERIFY))
        assert state.phase == Phase.WAITING_HUMAN
        assert state.pending_crp == "crp-001"
        assert state.current_agent == "verifier"

        state.cursor = Working(Phase.BUILD)
        assert state.phase == Phase.BUILD
        assert state.pending_crp is None
        assert state.current_agent == "builder"

        state.cursor = Settled(Phase.COMPLETED)
        assert state.is_terminal
        assert state.current_agent is None


# =============================================================================
# RunState
# =============================================================================


class TestRunState:
    """Tests for RunState construction and serialization."""

    def test_defaults(self):
        state = RunState(run_id=RUN_ID)
        assert state.phase == Phase.REFINE
        assert state.iteration == 1
        assert set(state.agents) == {"refiner", "builder", "verifier", "gatekeeper"}

    def test_rejects_invalid_run_id(self):
        with pytest.raises(ValueError):
            RunState(run_id="not-a-run")

    @pytest.mark.parametrize("iteration,max_iterations", [(0, 3), (4, 3), (1, 0)])
    def test_rejects_iteration_out_of_range(self, iteration, max_iterations):
        with pytest.raises(ValueError):
            RunState(run_id=RUN_ID, iteration=iteration, max_iterations=max_iterations)

    def test_round_trip_preserves_cursor_and_history(self):
        state = RunState(run_id=RUN_ID, cursor=AwaitingHuman("crp-002", Phase.GATE), briefing="goal")
        state.add_history(Phase.GATE, "crp_raised:crp-002")
        state.add_error("build: boom (after 2 attempts)")
        state.touch("crp_raised", "gatekeeper")

        data = run_state_to_dict(state)
        assert data["phase"] == "waiting_human"
        assert data["pending_crp"] == "crp-002"

        restored = run_state_from_dict(data)
        assert restored.cursor == state.cursor
        assert [h.result for h in restored.history] == ["crp_raised:crp-002"]
        assert restored.errors == state.errors
        assert restored.last_event.agent == "gatekeeper"

    def test_resume_vcr_survives_round_trip(self):
        state = RunState(run_id=RUN_ID, cursor=Working(Phase.GATE, resume_vcr="vcr-001"))
        restored = run_state_from_dict(run_state_to_dict(state))
        assert restored.cursor == Working(Phase.GATE, resume_vcr="vcr-001")

    def test_minor_fix_counters_survive_round_trip(self):
        state = RunState(run_id=RUN_ID, minor_fix_attempts=1, max_minor_fix_attempts=3)
        restored = run_state_from_dict(run_state_to_dict(state))
        assert (restored.minor_fix_attempts, restored.max_minor_fix_attempts) == (1, 3)

    def test_minor_fix_counters_default_on_old_records(self):
        data = run_state_to_dict(RunState(run_id=RUN_ID))
        del data["minor_fix_attempts"], data["max_minor_fix_attempts"]
        restored = run_state_from_dict(data)
        assert (restored.minor_fix_attempts, restored.max_minor_fix_attempts) == (0, 2)

    def test_rejects_negative_minor_fix_attempts(self):
        with pytest.raises(ValueError):
            RunState(run_id=RUN_ID, minor_fix_attempts=-1)

    def test_waiting_without_pending_crp_is_refused(self):
        data = run_state_to_dict(RunState(run_id=RUN_ID))
        data["phase"] = "waiting_human"
        with pytest.raises(ValueError):
            run_state_from_dict(data)

    def test_pending_crp_outside_waiting_is_refused(self):
        data = run_state_to_dict(RunState(run_id=RUN_ID))
        data["pending_crp"] = "crp-001"
        with pytest.raises(ValueError):
            run_state_from_dict(data)


# =============================================================================
# Time helpers
# =============================================================================


class TestTimeHelpers:
    def test_iso_has_z_suffix_and_parses_back_aware(self):
        moment = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        text = _datetime_to_iso(moment)
        assert text == "2025-01-02T03:04:05Z"
        assert _iso_to_datetime(text) == moment

    def test_none_passes_through(self):
        assert _datetime_to_iso(None) is None
        assert _iso_to_datetime(None) is None


# =============================================================================
# Fingerprints and plans
# =============================================================================


class TestFingerprint:
    def test_exact_mode_is_verbatim(self):
        assert question_fingerprint("Use Postgres?") == question_fingerprint("Use Postgres?")
        assert question_fingerprint("Use Postgres?") != question_fingerprint("use  postgres?")

    def test_normalized_mode_folds_case_and_whitespace(self):
        assert question_fingerprint("Use  Postgres?", "normalized") == question_fingerprint(
            " use postgres? ", "normalized"
        )

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            question_fingerprint("q", "fuzzy")


class TestPhasesFromPlan:
    def test_numbers_phases_and_tasks(self):
        phases = phases_from_plan(
            [
                {"title": "Schema", "tasks": [{"title": "Tables"}, {"title": "Indexes", "depends_on": ["task-1.1"]}]},
                {"title": "API", "tasks": [{"title": "Routes", "briefing": "CRUD"}]},
            ]
        )
        assert [p.number for p in phases] == [1, 2]
        assert phases[0].task_ids == ["task-1.1", "task-1.2"]
        assert phases[0].tasks[1].depends_on == ["task-1.1"]
        assert phases[1].tasks[0].briefing == "CRUD"

    def test_dependency_problems(self):
        phases = phases_from_plan(
            [
                {"title": "Schema", "tasks": [{"title": "Tables", "depends_on": ["task-2.1", "task-7.1"]}]},
                {"title": "API", "tasks": [{"title": "Routes", "depends_on": ["task-1.1", "task-2.1"]}]},
            ]
        )
        assert dependency_problems(phases) == [
            "task-1.1 depends on task-2.1 from later phase 2",
            "task-1.1 depends on unknown task task-7.1",
            "task-2.1 depends on itself",
        ]

    def test_valid_plan_has_no_dependency_problems(self):
        phases = phases_from_plan(
            [{"title": "Schema", "tasks": [{"title": "Tables"}, {"title": "Indexes", "depends_on": ["task-1.1"]}]}]
        )
        assert dependency_problems(phases) == []


class TestMissionRecord:
    def test_waiting_and_skipped_tasks_survive_round_trip(self):
        mission = Mission(mission_id=generate_mission_id(), title="Billing v2")
        mission.phases = phases_from_plan([{"title": "Schema", "tasks": [{"title": "Tables"}, {"title": "Seed"}]}])
        mission.phases[0].tasks[0].mark_waiting(RUN_ID, "crp-001")
        mission.phases[0].tasks[1].mark_skipped("not needed")
        mission.phases[0].summary = "Phase 1 (Schema) completed."
        mission.recompute_stats()

        restored = mission_from_dict(mission_to_dict(mission))

        waiting, skipped = restored.phases[0].tasks
        assert (waiting.status, waiting.run_id, waiting.pending_crp) == (TaskStatus.NEEDS_HUMAN, RUN_ID, "crp-001")
        assert (skipped.status, skipped.error) == (TaskStatus.SKIPPED, "not needed")
        assert skipped.is_resolved and not waiting.is_resolved
        assert restored.phases[0].summary == "Phase 1 (Schema) completed."
        assert (restored.stats.waiting_tasks, restored.stats.skipped_tasks) == (1, 1)
