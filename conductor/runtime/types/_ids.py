"""ID types and generators for the types package.

Provides run, mission, CRP and VCR identifiers plus type aliases.
"""

from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timezone
from typing import Literal

# Type aliases
RunId = str
MissionId = str
TaskId = str
AgentName = Literal["refiner", "builder", "verifier", "gatekeeper"]

AGENT_NAMES = ("refiner", "builder", "verifier", "gatekeeper")

# run-YYYYMMDD-HHMMSS-xxxxxx
RUN_ID_PATTERN = re.compile(r"run-\d{8}-\d{6}-[a-z0-9]{6}")
MISSION_ID_PATTERN = re.compile(r"mission-\d{8}-\d{6}-[a-z0-9]{4}")

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def _suffix(length: int) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def generate_run_id() -> RunId:
    """Generate a unique run ID.

    Creates IDs in the format: run-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix.

    Example:
        >>> run_id = generate_run_id()
        >>> run_id  # e.g., "run-20251208-143022-abc123"
    """
    now = datetime.now(timezone.utc)
    return f"run-{now.strftime('%Y%m%d-%H%M%S')}-{_suffix(6)}"


def generate_mission_id() -> MissionId:
    """Generate a unique mission ID (mission-YYYYMMDD-HHMMSS-xxxx)."""
    now = datetime.now(timezone.utc)
    return f"mission-{now.strftime('%Y%m%d-%H%M%S')}-{_suffix(4)}"


def is_valid_run_id(run_id: str) -> bool:
    """Check a run ID against the run-YYYYMMDD-HHMMSS-xxxxxx pattern."""
    return bool(RUN_ID_PATTERN.fullmatch(run_id or ""))


def is_valid_mission_id(mission_id: str) -> bool:
    return bool(MISSION_ID_PATTERN.fullmatch(mission_id or ""))


def make_task_id(phase_number: int, index: int) -> TaskId:
    """Build a task ID of the form task-<phase>.<index> (both 1-based)."""
    return f"task-{phase_number}.{index}"


def make_crp_id(sequence: int) -> str:
    return f"crp-{sequence:03d}"


def make_vcr_id(sequence: int) -> str:
    return f"vcr-{sequence:03d}"
