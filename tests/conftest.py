"""
Shared fixtures for conductor tests.

Provides an isolated state directory, a deterministic RetryExecutor that
never actually sleeps, a scriptable in-memory ProcessHost and factories for
orchestrators and services wired to them.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from conductor.config.runtime_config import RetryConfig, RuntimeConfig, reset_config
from conductor.runtime.agents import StubAgentInvoker
from conductor.runtime.events import EventRecorder, EventStream
from conductor.runtime.orchestrator import Orchestrator
from conductor.runtime.process_host import ProcessHost
from conductor.runtime.protocol import CRPProtocol
from conductor.runtime.retry import RetryExecutor, RetryPolicy
from conductor.runtime.service import ConductorService


class FakeHost(ProcessHost):
    """ProcessHost backed by plain attributes instead of tmux."""

    def __init__(self, run_id: str, alive: bool = False, active_agents: Optional[List[str]] = None):
        self.run_id = run_id
        self.alive = alive
        self.active_agents = list(active_agents or [])
        self.interrupted: List[str] = []

    def session_exists(self) -> bool:
        return self.alive

    def is_pane_active(self, agent: str) -> bool:
        return self.alive and agent in self.active_agents

    def interrupt(self, agent: str) -> bool:
        self.interrupted.append(agent)
        if agent in self.active_agents:
            self.active_agents.remove(agent)
        return self.alive

    def get_session_name(self) -> str:
        return f"fake-{self.run_id}"


class FakeHostFactory:
    """Hands out one FakeHost per run; tests flip ``hosts[run_id]`` as needed."""

    def __init__(self) -> None:
        self.hosts: Dict[str, FakeHost] = {}

    def __call__(self, run_id: str) -> FakeHost:
        if run_id not in self.hosts:
            self.hosts[run_id] = FakeHost(run_id)
        return self.hosts[run_id]

    def set_live(self, run_id: str, *agents: str) -> FakeHost:
        host = self(run_id)
        host.alive = True
        host.active_agents = list(agents)
        return host


@pytest.fixture(autouse=True)
def _isolated_singletons():
    """Keep the config cache and service singleton out of other tests."""
    reset_config()
    ConductorService.reset()
    yield
    ConductorService.reset()
    reset_config()


@pytest.fixture
def state_dir(tmp_path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the retry executor, in order."""
    return []


@pytest.fixture
def events() -> EventStream:
    return EventStream()


@pytest.fixture
def recorder(events) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def make_retry(events, sleeps):
    """Build a RetryExecutor with a seeded RNG and a recording no-op sleep."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(**policy) -> RetryExecutor:
        policy.setdefault("max_attempts", 2)
        return RetryExecutor(RetryPolicy(**policy), events=events, rng=random.Random(7), sleep=fake_sleep)

    return _make


@pytest.fixture
def host_factory() -> FakeHostFactory:
    return FakeHostFactory()


@pytest.fixture
def make_orchestrator(state_dir, events, make_retry, host_factory):
    """Build an Orchestrator over ``state_dir`` with a scripted invoker."""

    def _make(
        invoker: Optional[StubAgentInvoker] = None,
        max_attempts: int = 2,
        max_iterations: int = 3,
        fingerprint_mode: str = "exact",
        timeouts: Optional[Dict[str, float]] = None,
        max_minor_fix_attempts: int = 2,
    ) -> Orchestrator:
        return Orchestrator(
            state_dir,
            invoker or StubAgentInvoker(),
            retry=make_retry(max_attempts=max_attempts),
            protocol=CRPProtocol(state_dir, events=events, fingerprint_mode=fingerprint_mode),
            events=events,
            host_factory=host_factory,
            max_iterations=max_iterations,
            timeouts=timeouts,
            max_minor_fix_attempts=max_minor_fix_attempts,
        )

    return _make


@pytest.fixture
def runtime_config(state_dir) -> RuntimeConfig:
    """Config over ``state_dir`` with zero retry delays."""
    return RuntimeConfig(
        state_dir=state_dir,
        retry=RetryConfig(base_delay_seconds=0.0, max_delay_seconds=0.0),
    )


@pytest.fixture
def service(runtime_config, host_factory):
    service = ConductorService(runtime_config, invoker=StubAgentInvoker(), host_factory=host_factory)
    yield service
    service.close()
