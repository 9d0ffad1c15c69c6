"""
service.py - ConductorService facade

This module provides the central ConductorService singleton that wires the
runtime together from configuration: event stream and run journal, retry
executor, CRP/VCR protocol, agent invoker, process host, orchestrator,
interrupt recovery and mission engine. All consumers (API, CLI) should use
ConductorService rather than building components directly.

Usage:
    from conductor.runtime.service import ConductorService, get_conductor_service

    service = ConductorService.get_instance()
    state = service.orchestrator.start_run("Add retry to the HTTP client")
    state = await service.orchestrator.advance(state.run_id)
    vcr, state = await service.respond(run_id, "crp-001", "a", "Looks right", resume=True)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from . import storage
from ..config.runtime_config import RuntimeConfig, get_config
from .agents import AgentInvoker, CommandAgentInvoker, StubAgentInvoker
from .events import EventStream
from .missions import MissionEngine, OrchestratorTaskExecutor
from .orchestrator import Orchestrator
from .process_host import ProcessHostFactory, tmux_host_factory
from .protocol import CRPProtocol
from .recovery import InterruptRecovery
from .retry import RetryExecutor, RetryPolicy
from .types import VCR, ErrorKind, JournalEntry, RunId, RunState

# Module logger
logger = logging.getLogger(__name__)


def build_invoker(config: RuntimeConfig) -> AgentInvoker:
    """Agent invoker selected by ``engine.mode``."""
    if config.engine.mode == "command":
        return CommandAgentInvoker(config.engine.command)
    return StubAgentInvoker()


def build_retry_policy(config: RuntimeConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay_seconds=config.retry.base_delay_seconds,
        max_delay_seconds=config.retry.max_delay_seconds,
        backoff_multiplier=config.retry.backoff_multiplier,
        recoverable_errors=tuple(ErrorKind(kind) for kind in config.retry.recoverable_errors),
    )


class ConductorService:
    """Central service owning one wired set of runtime components.

    Attributes:
        config: Resolved runtime configuration.
        state_dir: Root of persisted state.
        events: Shared typed event stream (journaled per run).
        retry: RetryExecutor shared by the orchestrator and the mission engine.
        protocol: CRP/VCR protocol.
        orchestrator: Run phase state machine.
        recovery: Interrupted-run detection and recovery.
        missions: Mission execution engine.
    """

    _instance: Optional["ConductorService"] = None

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        invoker: Optional[AgentInvoker] = None,
        host_factory: Optional[ProcessHostFactory] = None,
    ):
        """Initialize the service.

        Args:
            config: Runtime configuration. Defaults to ``get_config()``.
            invoker: Agent invoker. Defaults to the one named by engine.mode.
            host_factory: Process host factory. Defaults to tmux sessions
                named after orchestrator.session_prefix.
        """
        self.config = config or get_config()
        self.state_dir = Path(self.config.state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.events = EventStream()
        self._detach_journal = self.events.attach_journal(self.state_dir)
        self.retry = RetryExecutor(build_retry_policy(self.config), events=self.events)
        self.protocol = CRPProtocol(
            self.state_dir,
            events=self.events,
            fingerprint_mode=self.config.protocol.fingerprint_mode,
        )
        self.host_factory = host_factory or tmux_host_factory(self.config.orchestrator.session_prefix)
        self.orchestrator = Orchestrator(
            self.state_dir,
            invoker or build_invoker(self.config),
            retry=self.retry,
            protocol=self.protocol,
            events=self.events,
            host_factory=self.host_factory,
            max_iterations=self.config.orchestrator.max_iterations,
            timeouts=self.config.orchestrator.timeouts,
            max_minor_fix_attempts=self.config.orchestrator.max_minor_fix_attempts,
        )
        self.recovery = InterruptRecovery(
            self.state_dir,
            self.host_factory,
            events=self.events,
            orchestrator=self.orchestrator,
            auto_recover=self.config.recovery.auto_recover,
            stale_after_seconds=self.config.recovery.stale_after_seconds,
            max_age_seconds=self.config.recovery.max_age_seconds,
        )
        self.missions = MissionEngine(
            self.state_dir,
            OrchestratorTaskExecutor(self.orchestrator),
            retry=self.retry,
            events=self.events,
        )
        logger.debug(
            "ConductorService ready (state_dir=%s, engine=%s)",
            self.state_dir,
            self.orchestrator.invoker.invoker_id,
        )

    @classmethod
    def get_instance(cls, config: Optional[RuntimeConfig] = None) -> "ConductorService":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(config)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None

    def close(self) -> None:
        self._detach_journal()

    # =========================================================================
    # Runs
    # =========================================================================

    def get_run(self, run_id: RunId) -> RunState:
        return self.orchestrator.get_state(run_id)

    def list_runs(self) -> List[RunState]:
        """All readable runs, most recently started first."""
        return sorted(self.orchestrator.list_runs(), key=lambda s: s.started_at, reverse=True)

    def get_events(self, run_id: RunId) -> List[JournalEntry]:
        self.orchestrator.get_state(run_id)
        return storage.read_events(run_id, self.state_dir)

    async def respond(
        self,
        run_id: RunId,
        crp_id: str,
        decision: str,
        rationale: str,
        notes: Optional[str] = None,
        applies_to_future: bool = False,
        resume: bool = False,
    ) -> Tuple[VCR, RunState]:
        """Submit a VCR and, if ``resume`` is set, resume the run with it."""
        vcr = self.protocol.submit_vcr(
            run_id,
            crp_id,
            decision,
            rationale,
            notes=notes,
            applies_to_future=applies_to_future,
        )
        if resume:
            state = await self.orchestrator.resume_run(run_id)
        else:
            state = self.orchestrator.get_state(run_id)
        return vcr, state


def get_conductor_service() -> ConductorService:
    """Get the ConductorService singleton."""
    return ConductorService.get_instance()
