"""
Tests for conductor.runtime.process_host - tmux liveness and interrupts.

tmux itself is never executed: subprocess.run is replaced with a fake that
records the argument lists and answers from a table.
"""

from __future__ import annotations

import subprocess
from typing import List

import pytest

from conductor.runtime import process_host
from conductor.runtime.process_host import TmuxProcessHost, session_name_for, tmux_host_factory

RUN_ID = "run-20250101-120000-abc123"
SESSION = f"conductor-{RUN_ID}"


class FakeTmux:
    """Stands in for subprocess.run; ``panes`` is the list-panes output."""

    def __init__(self, session_alive: bool = True, panes: str = "", error: Exception = None):
        self.session_alive = session_alive
        self.panes = panes
        self.error = error
        self.calls: List[List[str]] = []

    def __call__(self, cmd, capture_output, text, timeout):
        self.calls.append(cmd)
        if self.error is not None:
            raise self.error
        sub = cmd[1]
        if sub == "has-session":
            return subprocess.CompletedProcess(cmd, 0 if self.session_alive else 1, "", "")
        if sub == "list-panes":
            return subprocess.CompletedProcess(cmd, 0, self.panes, "")
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_tmux(monkeypatch):
    def _install(**kwargs) -> FakeTmux:
        fake = FakeTmux(**kwargs)
        monkeypatch.setattr(process_host.subprocess, "run", fake)
        return fake

    return _install


class TestSessionNames:
    """Tests for session_name_for."""

    def test_prefix_and_run(self):
        assert session_name_for("conductor", RUN_ID) == SESSION

    def test_unsafe_characters_are_removed(self):
        assert session_name_for("my.team:ci", "run 1") == "myteamci-run1"

    def test_empty_prefix_falls_back(self):
        assert session_name_for("::", None) == "conductor"


class TestTmuxProcessHost:
    """Tests for TmuxProcessHost against a fake tmux."""

    def test_session_exists(self, fake_tmux):
        fake = fake_tmux()
        assert TmuxProcessHost("conductor", RUN_ID).session_exists()
        assert fake.calls == [["tmux", "has-session", "-t", SESSION]]

    def test_session_missing(self, fake_tmux):
        fake_tmux(session_alive=False)
        assert not TmuxProcessHost("conductor", RUN_ID).session_exists()

    def test_busy_pane_is_active(self, fake_tmux):
        fake_tmux(panes="0:bash\n1:python3\n2:zsh\n3:bash\n")
        host = TmuxProcessHost("conductor", RUN_ID)

        assert host.is_pane_active("builder")
        assert not host.is_pane_active("refiner")
        assert not host.is_pane_active("verifier")

    def test_missing_pane_is_inactive(self, fake_tmux):
        fake_tmux(panes="0:node\n")
        assert not TmuxProcessHost("conductor", RUN_ID).is_pane_active("gatekeeper")

    def test_dead_session_is_inactive(self, fake_tmux):
        fake = fake_tmux(session_alive=False, panes="1:python3\n")
        assert not TmuxProcessHost("conductor", RUN_ID).is_pane_active("builder")
        assert len(fake.calls) == 1

    def test_unknown_agent_is_inactive(self, fake_tmux):
        fake_tmux(panes="0:python3\n")
        assert not TmuxProcessHost("conductor", RUN_ID).is_pane_active("reviewer")

    def test_interrupt_sends_ctrl_c(self, fake_tmux):
        fake = fake_tmux()

        assert TmuxProcessHost("conductor", RUN_ID).interrupt("verifier")

        assert fake.calls[-1] == ["tmux", "send-keys", "-t", f"{SESSION}:main.2", "C-c"]

    def test_interrupt_without_session(self, fake_tmux):
        fake = fake_tmux(session_alive=False)
        assert not TmuxProcessHost("conductor", RUN_ID).interrupt("builder")
        assert all(call[1] != "send-keys" for call in fake.calls)

    def test_interrupt_unknown_agent(self, fake_tmux):
        fake_tmux()
        with pytest.raises(ValueError):
            TmuxProcessHost("conductor", RUN_ID).interrupt("reviewer")

    @pytest.mark.parametrize(
        "error",
        [
            FileNotFoundError("tmux"),
            subprocess.TimeoutExpired(["tmux"], 10),
            PermissionError("denied"),
        ],
    )
    def test_tmux_failures_read_as_not_running(self, fake_tmux, error):
        fake_tmux(error=error)
        host = TmuxProcessHost("conductor", RUN_ID)

        assert not host.session_exists()
        assert not host.is_pane_active("builder")
        assert not host.interrupt("builder")

    def test_factory_builds_one_host_per_run(self):
        host = tmux_host_factory("ci")(RUN_ID)
        assert host.get_session_name() == f"ci-{RUN_ID}"
