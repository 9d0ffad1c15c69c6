"""
agents.py - Agent invocation interface and built-in invokers

The orchestrator hands each agent phase to an AgentInvoker as an
AgentRequest and gets back an AgentResult. Invokers are responsible for
running the agent; they do NOT own phase transitions, retries or
persistence (that's the orchestrator's job).

Built-in invokers:
    StubAgentInvoker     scripted results, no external process (default)
    CommandAgentInvoker  runs a command per request, JSON over stdin/stdout
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import AgentCrashError, AgentValidationError
from .types import CRPOption, Phase, RunId

# Module logger
logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    """Gatekeeper verdict."""

    PASS = "PASS"
    MINOR_FAIL = "MINOR_FAIL"
    FAIL = "FAIL"
    NEEDS_HUMAN = "NEEDS_HUMAN"


@dataclass
class AgentRequest:
    """Everything an agent needs to execute one phase.

    Attributes:
        run_id: The run being executed.
        agent: Agent name (refiner, builder, verifier, gatekeeper).
        phase: The pipeline phase.
        iteration: Current refine->gate cycle.
        briefing: The run's goal.
        decision: Human decision fed into this execution, if a VCR is
            being applied ({"crp_id", "vcr_id", "decision", "rationale",
            "notes"}).
    """

    run_id: RunId
    agent: str
    phase: Phase
    iteration: int
    briefing: str = ""
    decision: Optional[Dict[str, Any]] = None


@dataclass
class CRPRequest:
    """A checkpoint an agent wants a human to decide."""

    question: str
    options: List[CRPOption] = field(default_factory=list)
    context: Optional[str] = None


@dataclass
class AgentResult:
    """Outcome of one agent execution.

    ``success=False`` means the agent finished but its output is unusable;
    the orchestrator treats it as a validation failure. ``verdict`` is only
    meaningful for the gatekeeper.
    """

    success: bool = True
    summary: str = ""
    verdict: Optional[Verdict] = None
    crp: Optional[CRPRequest] = None
    error: Optional[str] = None


def agent_request_to_dict(request: AgentRequest) -> Dict[str, Any]:
    return {
        "run_id": request.run_id,
        "agent": request.agent,
        "phase": request.phase.value,
        "iteration": request.iteration,
        "briefing": request.briefing,
        "decision": request.decision,
    }


def agent_result_from_dict(data: Dict[str, Any]) -> AgentResult:
    """Parse an AgentResult from a dictionary.

    Raises:
        ValueError: On an unknown verdict.
    """
    crp_data = data.get("crp")
    crp = None
    if crp_data:
        crp = CRPRequest(
            question=crp_data.get("question", ""),
            options=[
                CRPOption(id=str(o.get("id", "")), label=o.get("label", ""), description=o.get("description", ""))
                for o in crp_data.get("options", [])
            ],
            context=crp_data.get("context"),
        )
    verdict = data.get("verdict")
    return AgentResult(
        success=bool(data.get("success", True)),
        summary=data.get("summary", ""),
        verdict=Verdict(verdict) if verdict else None,
        crp=crp,
        error=data.get("error"),
    )


class AgentInvoker(ABC):
    """Abstract base class for agent invokers."""

    @property
    @abstractmethod
    def invoker_id(self) -> str:
        ...

    @abstractmethod
    async def invoke(self, request: AgentRequest) -> AgentResult:
        """Run the agent for one phase.

        Raises:
            AgentCrashError, AgentValidationError: On agent failure.
        """
        ...


ScriptStep = Union[AgentResult, BaseException]


class StubAgentInvoker(AgentInvoker):
    """Invoker returning scripted results without running anything.

    Each agent consumes its own queue of scripted steps; an exhausted or
    missing queue yields a plain success (PASS for the gatekeeper). Every
    request is recorded in ``calls``.
    """

    def __init__(self, script: Optional[Dict[str, List[ScriptStep]]] = None, delay: float = 0.0):
        self._script: Dict[str, List[ScriptStep]] = {
            agent: list(steps) for agent, steps in (script or {}).items()
        }
        self._delay = delay
        self.calls: List[AgentRequest] = []

    @property
    def invoker_id(self) -> str:
        return "stub"

    def push(self, agent: str, *steps: ScriptStep) -> None:
        self._script.setdefault(agent, []).extend(steps)

    async def invoke(self, request: AgentRequest) -> AgentResult:
        self.calls.append(request)
        if self._delay:
            await asyncio.sleep(self._delay)

        queue = self._script.get(request.agent)
        if queue:
            step = queue.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step

        if request.agent == "gatekeeper":
            return AgentResult(summary="stub gate", verdict=Verdict.PASS)
        return AgentResult(summary=f"stub {request.agent}")


class CommandAgentInvoker(AgentInvoker):
    """Runs ``command`` once per request.

    The request is written to stdin as JSON; the command prints an
    AgentResult JSON object on stdout. A non-zero exit status is a crash,
    unparseable output is a validation failure.
    """

    def __init__(self, command: str):
        if not command:
            raise ValueError("CommandAgentInvoker requires a command")
        self._argv = shlex.split(command)

    @property
    def invoker_id(self) -> str:
        return "command"

    async def invoke(self, request: AgentRequest) -> AgentResult:
        payload = json.dumps(agent_request_to_dict(request)).encode("utf-8")
        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AgentCrashError(f"Failed to start agent command: {e}", {"agent": request.agent}) from e

        try:
            stdout, stderr = await process.communicate(payload)
        except asyncio.CancelledError:
            process.kill()
            raise

        if process.returncode != 0:
            message = stderr.decode("utf-8", "replace").strip() or f"exit status {process.returncode}"
            raise AgentCrashError(
                f"{request.agent} exited with status {process.returncode}: {message}",
                {"agent": request.agent, "returncode": process.returncode},
            )

        try:
            return agent_result_from_dict(json.loads(stdout.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, ValueError) as e:
            raise AgentValidationError(
                f"{request.agent} produced invalid output: {e}", {"agent": request.agent}
            ) from e
