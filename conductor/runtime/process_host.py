"""
process_host.py - Abstract ProcessHost and the tmux implementation

A ProcessHost answers liveness questions about the processes that run the
agents of one run and can interrupt them. The conductor never starts agent
processes through this interface; it only observes and stops them.

Usage:
    from conductor.runtime.process_host import TmuxProcessHost
    host = TmuxProcessHost("conductor", run_id)
    if host.is_pane_active("builder"):
        host.interrupt("builder")
"""

from __future__ import annotations

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from .types import RunId

# Module logger
logger = logging.getLogger(__name__)

# Pane layout of a run session (window "main")
AGENT_PANES: Dict[str, int] = {
    "refiner": 0,
    "builder": 1,
    "verifier": 2,
    "gatekeeper": 3,
}

# A pane whose foreground command is a shell is idle
IDLE_COMMANDS = frozenset({"bash", "zsh", "sh", "fish"})

_UNSAFE_SESSION_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class ProcessHost(ABC):
    """Abstract base class for agent process hosts."""

    @abstractmethod
    def session_exists(self) -> bool:
        """True if the host session of the run exists."""
        ...

    @abstractmethod
    def is_pane_active(self, agent: str) -> bool:
        """True if a live (non-idle) process is running for ``agent``."""
        ...

    @abstractmethod
    def interrupt(self, agent: str) -> bool:
        """Interrupt the agent's process. Returns True if a signal was sent."""
        ...

    @abstractmethod
    def get_session_name(self) -> str:
        ...


ProcessHostFactory = Callable[[RunId], ProcessHost]


def session_name_for(prefix: str, run_id: Optional[RunId] = None) -> str:
    """Build a tmux-safe session name from a prefix and an optional run id."""
    name = _UNSAFE_SESSION_CHARS.sub("", prefix) or "conductor"
    if run_id:
        name = f"{name}-{_UNSAFE_SESSION_CHARS.sub('', run_id)}"
    return name


class TmuxProcessHost(ProcessHost):
    """ProcessHost backed by a tmux session named ``<prefix>-<run_id>``.

    Each agent owns a fixed pane of the session's ``main`` window.
    """

    def __init__(self, session_prefix: str, run_id: Optional[RunId] = None, timeout: int = 10):
        self._session_name = session_name_for(session_prefix, run_id)
        self._timeout = timeout

    def _tmux(self, args: List[str]) -> Tuple[bool, str]:
        """Run a tmux command; returns (success, stdout)."""
        try:
            result = subprocess.run(
                ["tmux"] + args,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
            return result.returncode == 0, result.stdout
        except subprocess.TimeoutExpired:
            logger.warning("tmux %s timed out after %ds", args[0], self._timeout)
            return False, ""
        except FileNotFoundError:
            logger.debug("tmux not found in PATH")
            return False, ""
        except OSError as e:
            logger.warning("tmux %s failed: %s", args[0], e)
            return False, ""

    def _target(self, agent: str) -> str:
        if agent not in AGENT_PANES:
            raise ValueError(f"Unknown agent: {agent!r}")
        return f"{self._session_name}:main.{AGENT_PANES[agent]}"

    def get_session_name(self) -> str:
        return self._session_name

    def session_exists(self) -> bool:
        ok, _ = self._tmux(["has-session", "-t", self._session_name])
        return ok

    def is_pane_active(self, agent: str) -> bool:
        pane_index = AGENT_PANES.get(agent)
        if pane_index is None or not self.session_exists():
            return False

        ok, stdout = self._tmux(
            [
                "list-panes",
                "-t",
                f"{self._session_name}:main",
                "-F",
                "#{pane_index}:#{pane_current_command}",
            ]
        )
        if not ok:
            return False

        for line in stdout.strip().splitlines():
            index, _, command = line.partition(":")
            if index.strip().isdigit() and int(index) == pane_index:
                return command.strip() not in IDLE_COMMANDS
        return False

    def interrupt(self, agent: str) -> bool:
        if not self.session_exists():
            return False
        ok, _ = self._tmux(["send-keys", "-t", self._target(agent), "C-c"])
        if ok:
            logger.info("Interrupted %s in tmux session %s", agent, self._session_name)
        return ok


def tmux_host_factory(session_prefix: str) -> ProcessHostFactory:
    """Factory producing one TmuxProcessHost per run."""

    def _factory(run_id: RunId) -> ProcessHost:
        return TmuxProcessHost(session_prefix, run_id)

    return _factory
