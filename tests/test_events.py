"""
Tests for conductor.runtime.events - the typed event stream and run journal.
"""

from __future__ import annotations

from conductor.runtime import storage
from conductor.runtime.events import EventRecorder, EventStream
from conductor.runtime.types import Phase, PhaseChanged, RetryContext, RetryStarted, RunStarted, RunState

RUN_ID = "run-20250101-120000-abc123"


class TestEventStream:
    """Tests for subscribe/publish."""

    def test_filtered_subscription(self, events):
        starts = EventRecorder(events, kinds={"run_started"})
        everything = EventRecorder(events)

        events.publish(RunStarted(run_id=RUN_ID, max_iterations=3))
        events.publish(PhaseChanged(run_id=RUN_ID, from_phase=Phase.REFINE, to_phase=Phase.BUILD))

        assert starts.kinds() == ["run_started"]
        assert everything.kinds() == ["run_started", "phase_changed"]
        assert everything.of_kind("phase_changed")[0].to_phase == Phase.BUILD

    def test_unsubscribe(self, events):
        recorder = EventRecorder(events)
        recorder.close()
        events.publish(RunStarted(run_id=RUN_ID, max_iterations=3))
        assert recorder.events == []

    def test_failing_subscriber_is_isolated(self, events):
        def broken(event):
            raise RuntimeError("subscriber bug")

        events.subscribe(broken)
        recorder = EventRecorder(events)

        events.publish(RunStarted(run_id=RUN_ID, max_iterations=3))

        assert recorder.kinds() == ["run_started"]


class TestJournal:
    """Tests for attach_journal."""

    def test_run_events_are_appended_with_sequence(self, state_dir):
        storage.write_run_state(RunState(run_id=RUN_ID), state_dir)
        stream = EventStream()
        detach = stream.attach_journal(state_dir)

        stream.publish(RunStarted(run_id=RUN_ID, max_iterations=3))
        stream.publish(RetryStarted(context=RetryContext(run_id=RUN_ID, agent="refiner"), attempt=1, max_attempts=2))
        detach()
        stream.publish(PhaseChanged(run_id=RUN_ID, from_phase=Phase.REFINE, to_phase=Phase.BUILD))

        entries = storage.read_events(RUN_ID, state_dir)
        assert [e.kind for e in entries] == ["run_started", "retry_started"]
        assert [e.seq for e in entries] == [1, 2]

    def test_events_for_unknown_runs_are_not_journaled(self, state_dir):
        stream = EventStream()
        stream.attach_journal(state_dir)

        stream.publish(RetryStarted(context=RetryContext(run_id="mission-1", agent="task-1.1"), attempt=1, max_attempts=2))

        assert storage.read_events(RUN_ID, state_dir) == []
