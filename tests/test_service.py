"""
Tests for conductor.runtime.service - wiring from configuration.
"""

from __future__ import annotations

import asyncio
import dataclasses

from conductor.config.runtime_config import EngineConfig, RetryConfig
from conductor.runtime.agents import AgentResult, CommandAgentInvoker, CRPRequest, StubAgentInvoker
from conductor.runtime.service import ConductorService, build_invoker, build_retry_policy
from conductor.runtime.types import CRPOption, ErrorKind, Phase


class TestBuilders:
    def test_stub_engine(self, runtime_config):
        assert isinstance(build_invoker(runtime_config), StubAgentInvoker)

    def test_command_engine(self, runtime_config):
        config = dataclasses.replace(runtime_config, engine=EngineConfig(mode="command", command="agent --json"))
        assert isinstance(build_invoker(config), CommandAgentInvoker)

    def test_retry_policy_from_config(self, runtime_config):
        config = dataclasses.replace(
            runtime_config, retry=RetryConfig(max_attempts=4, recoverable_errors=("timeout",))
        )

        policy = build_retry_policy(config)

        assert policy.max_attempts == 4
        assert policy.recoverable_errors == (ErrorKind.TIMEOUT,)


class TestConductorService:
    """Tests for the service facade."""

    def test_singleton(self, runtime_config):
        first = ConductorService.get_instance(runtime_config)
        assert ConductorService.get_instance() is first

        ConductorService.reset()

        assert ConductorService.get_instance(runtime_config) is not first

    def test_runs_are_journaled(self, service):
        state = service.orchestrator.start_run("Add retry")
        asyncio.run(service.orchestrator.advance(state.run_id))

        kinds = [entry.kind for entry in service.get_events(state.run_id)]

        assert "run_started" in kinds
        assert "run_ready_for_merge" in kinds
        assert [run.run_id for run in service.list_runs()] == [state.run_id]

    def test_respond_with_resume(self, service):
        options = [CRPOption("a"), CRPOption("b")]
        service.orchestrator.invoker.push("refiner", AgentResult(crp=CRPRequest("Scope?", options)))
        state = service.orchestrator.start_run("Add retry")
        state = asyncio.run(service.orchestrator.advance(state.run_id))
        assert state.pending_crp == "crp-001"

        vcr, state = asyncio.run(service.respond(state.run_id, "crp-001", "b", "Smaller", resume=True))

        assert vcr.decision == "b"
        assert state.phase == Phase.READY_FOR_MERGE
        refiner_calls = [c for c in service.orchestrator.invoker.calls if c.agent == "refiner"]
        assert refiner_calls[-1].decision["decision"] == "b"
