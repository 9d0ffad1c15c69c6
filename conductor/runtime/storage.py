"""
storage.py - Disk I/O helpers for runs, CRPs, VCRs, missions and events.

This module provides functions for persisting and loading conductor state
from disk. The storage layout under a state directory is:

    <state_dir>/
      runs/
        <run_id>/
          state.json         # RunState serialized (cursor flattened)
          events.jsonl       # newline-delimited JournalEntry objects
          crps/<crp_id>.json # write-once CRP records
          vcrs/<vcr_id>.json # write-once VCR records
      missions/
        <mission_id>/
          mission.json       # Mission serialized

Usage:
    from conductor.runtime.storage import (
        get_run_path, run_exists,
        write_run_state, read_run_state, list_runs, read_all_run_states,
        write_crp, read_crp, list_crps, next_crp_id,
        write_vcr, read_vcr, list_vcrs, next_vcr_id,
        append_event, read_events,
        write_mission, read_mission, list_missions,
    )
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .types import (
    CRP,
    VCR,
    JournalEntry,
    Mission,
    MissionId,
    RunId,
    RunState,
    crp_from_dict,
    crp_to_dict,
    journal_entry_from_dict,
    journal_entry_to_dict,
    make_crp_id,
    make_vcr_id,
    mission_from_dict,
    mission_to_dict,
    run_state_from_dict,
    run_state_to_dict,
    vcr_from_dict,
    vcr_to_dict,
)

# Module logger
logger = logging.getLogger(__name__)

# Directory and file names
RUNS_SUBDIR = "runs"
MISSIONS_SUBDIR = "missions"
CRPS_SUBDIR = "crps"
VCRS_SUBDIR = "vcrs"
STATE_FILE = "state.json"
EVENTS_FILE = "events.jsonl"
MISSION_FILE = "mission.json"

# -----------------------------------------------------------------------------
# Per-record locking for thread safety
# -----------------------------------------------------------------------------
# Read-modify-write sequences (state updates, id allocation, write-once
# records) are serialized per run or mission. This is in-process locking
# only; a single active driver per run is assumed across processes.

_LOCKS: Dict[str, threading.RLock] = {}
_LOCKS_LOCK = threading.Lock()

# -----------------------------------------------------------------------------
# Per-journal sequence tracking for monotonic event ordering
# -----------------------------------------------------------------------------
# Keyed by the journal path so that separate state directories never share
# a counter.

_journal_sequences: Dict[str, int] = {}
_seq_lock = threading.Lock()


def _next_seq(events_path: Path) -> int:
    """Get the next monotonic sequence number for a journal.

    Sequence numbers start at 1. On first use the counter is initialized
    from the highest ``seq`` already on disk, so a restarted process
    continues where the previous one stopped.
    """
    key = str(events_path)
    with _seq_lock:
        if key not in _journal_sequences:
            _journal_sequences[key] = _max_seq_on_disk(events_path)
        seq = _journal_sequences[key] + 1
        _journal_sequences[key] = seq
        return seq


def _max_seq_on_disk(events_path: Path) -> int:
    if not events_path.exists():
        return 0

    max_seq = 0
    try:
        with open(events_path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    try:
                        max_seq = max(max_seq, int(json.loads(line).get("seq", 0)))
                    except (json.JSONDecodeError, TypeError, ValueError):
                        continue
    except OSError:
        return 0

    if max_seq:
        logger.debug("Recovered journal sequence at %s: max_seq=%d", events_path, max_seq)
    return max_seq


def get_lock(record_id: str) -> threading.RLock:
    """Get or create the lock for a run or mission id.

    The lock is re-entrant so a component holding it can call back into
    storage helpers that take it again.
    """
    with _LOCKS_LOCK:
        lock = _LOCKS.get(record_id)
        if lock is None:
            lock = threading.RLock()
            _LOCKS[record_id] = lock
        return lock


# -----------------------------------------------------------------------------
# Atomic File I/O Helpers
# -----------------------------------------------------------------------------


def _atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON data to a file atomically.

    Uses a temporary file + os.replace pattern to ensure atomicity.
    This prevents partial writes if the process is killed mid-write.
    """
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    # Temp file in the same directory keeps the rename on one filesystem
    fd, tmp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=path.name + ".",
        dir=parent,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _load_json_safe(path: Path, record_id: str, file_type: str = "file") -> Optional[Dict[str, Any]]:
    """Load a JSON file with graceful error handling.

    Returns None on parse errors instead of raising, to allow callers
    to skip corrupt records.

    Args:
        path: Path to JSON file.
        record_id: Run or mission identifier for logging.
        file_type: Description of file type for logging (e.g., "state", "crp").

    Returns:
        Parsed JSON dict, or None if the file doesn't exist or is corrupt.
    """
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt %s for '%s' at %s: %s (skipping)", file_type, record_id, path, e)
        return None
    except OSError as e:
        logger.warning("Failed to read %s for '%s' at %s: %s", file_type, record_id, path, e)
        return None

    if not isinstance(data, dict):
        logger.warning("Unexpected %s content for '%s' at %s (skipping)", file_type, record_id, path)
        return None
    return data


# -----------------------------------------------------------------------------
# Path Helpers
# -----------------------------------------------------------------------------


def get_runs_dir(state_dir: Path) -> Path:
    return Path(state_dir) / RUNS_SUBDIR


def get_missions_dir(state_dir: Path) -> Path:
    return Path(state_dir) / MISSIONS_SUBDIR


def get_run_path(run_id: RunId, state_dir: Path) -> Path:
    """Get the path for a run directory.

    Example:
        >>> get_run_path("run-20251208-143022-abc123", Path(".conductor"))
        PosixPath('.conductor/runs/run-20251208-143022-abc123')
    """
    return get_runs_dir(state_dir) / run_id


def get_mission_path(mission_id: MissionId, state_dir: Path) -> Path:
    return get_missions_dir(state_dir) / mission_id


def run_exists(run_id: RunId, state_dir: Path) -> bool:
    """A run exists once its state.json has been written."""
    return (get_run_path(run_id, state_dir) / STATE_FILE).exists()


# -----------------------------------------------------------------------------
# RunState I/O
# -----------------------------------------------------------------------------


def write_run_state(state: RunState, state_dir: Path) -> Path:
    """Write RunState to state.json atomically.

    Returns:
        Path to the written state.json file.
    """
    state_path = get_run_path(state.run_id, state_dir) / STATE_FILE
    with get_lock(state.run_id):
        _atomic_write_json(state_path, run_state_to_dict(state))
    return state_path


def read_run_state(run_id: RunId, state_dir: Path) -> Optional[RunState]:
    """Read RunState from state.json with graceful error handling.

    Returns:
        The RunState if it exists and is valid, None otherwise. Records
        with an illegal phase/pending_crp combination count as invalid.
    """
    state_path = get_run_path(run_id, state_dir) / STATE_FILE

    data = _load_json_safe(state_path, run_id, "state")
    if data is None:
        return None

    try:
        return run_state_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Invalid state data for run '%s' at %s: %s", run_id, state_path, e)
        return None


def list_runs(state_dir: Path) -> List[RunId]:
    """List all run IDs that have a state.json, sorted (chronologically)."""
    runs_dir = get_runs_dir(state_dir)
    if not runs_dir.exists():
        return []

    run_ids: List[RunId] = []
    for entry in runs_dir.iterdir():
        if entry.is_dir() and (entry / STATE_FILE).exists():
            run_ids.append(entry.name)

    return sorted(run_ids)


def read_all_run_states(state_dir: Path) -> List[RunState]:
    """Load every readable RunState; corrupt records are skipped."""
    states: List[RunState] = []
    for run_id in list_runs(state_dir):
        state = read_run_state(run_id, state_dir)
        if state is not None:
            states.append(state)
    return states


# -----------------------------------------------------------------------------
# CRP / VCR I/O (write-once)
# -----------------------------------------------------------------------------


def _write_once(path: Path, data: Dict[str, Any]) -> Path:
    if path.exists():
        raise FileExistsError(f"Record already exists: {path}")
    _atomic_write_json(path, data)
    return path


def _next_record_id(directory: Path, make_id) -> str:
    count = len(list(directory.glob("*.json"))) if directory.exists() else 0
    return make_id(count + 1)


def next_crp_id(run_id: RunId, state_dir: Path) -> str:
    """Allocate the next sequential CRP id for a run (crp-001, crp-002, ...).

    Callers hold ``get_lock(run_id)`` across allocation and write.
    """
    return _next_record_id(get_run_path(run_id, state_dir) / CRPS_SUBDIR, make_crp_id)


def next_vcr_id(run_id: RunId, state_dir: Path) -> str:
    return _next_record_id(get_run_path(run_id, state_dir) / VCRS_SUBDIR, make_vcr_id)


def write_crp(crp: CRP, state_dir: Path) -> Path:
    """Persist a CRP. CRPs are immutable: rewriting one raises FileExistsError."""
    path = get_run_path(crp.run_id, state_dir) / CRPS_SUBDIR / f"{crp.crp_id}.json"
    with get_lock(crp.run_id):
        return _write_once(path, crp_to_dict(crp))


def read_crp(run_id: RunId, crp_id: str, state_dir: Path) -> Optional[CRP]:
    path = get_run_path(run_id, state_dir) / CRPS_SUBDIR / f"{crp_id}.json"
    data = _load_json_safe(path, run_id, "crp")
    if data is None:
        return None
    try:
        return crp_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Invalid CRP data for run '%s' at %s: %s", run_id, path, e)
        return None


def list_crps(run_id: RunId, state_dir: Path) -> List[CRP]:
    """All readable CRPs of a run, in id order."""
    directory = get_run_path(run_id, state_dir) / CRPS_SUBDIR
    if not directory.exists():
        return []
    crps: List[CRP] = []
    for path in sorted(directory.glob("*.json")):
        crp = read_crp(run_id, path.stem, state_dir)
        if crp is not None:
            crps.append(crp)
    return crps


def write_vcr(run_id: RunId, vcr: VCR, state_dir: Path) -> Path:
    """Persist a VCR. VCRs are immutable: rewriting one raises FileExistsError."""
    path = get_run_path(run_id, state_dir) / VCRS_SUBDIR / f"{vcr.vcr_id}.json"
    with get_lock(run_id):
        return _write_once(path, vcr_to_dict(vcr))


def read_vcr(run_id: RunId, vcr_id: str, state_dir: Path) -> Optional[VCR]:
    path = get_run_path(run_id, state_dir) / VCRS_SUBDIR / f"{vcr_id}.json"
    data = _load_json_safe(path, run_id, "vcr")
    if data is None:
        return None
    try:
        return vcr_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Invalid VCR data for run '%s' at %s: %s", run_id, path, e)
        return None


def list_vcrs(run_id: RunId, state_dir: Path) -> List[VCR]:
    """All readable VCRs of a run, in id order."""
    directory = get_run_path(run_id, state_dir) / VCRS_SUBDIR
    if not directory.exists():
        return []
    vcrs: List[VCR] = []
    for path in sorted(directory.glob("*.json")):
        vcr = read_vcr(run_id, path.stem, state_dir)
        if vcr is not None:
            vcrs.append(vcr)
    return vcrs


# -----------------------------------------------------------------------------
# Event journal I/O (JSONL - newline-delimited JSON)
# -----------------------------------------------------------------------------


def append_event(entry: JournalEntry, state_dir: Path) -> None:
    """Append a JournalEntry to the run's events.jsonl.

    The storage layer assigns a monotonically increasing sequence number
    to each entry before writing. Failures are logged and swallowed:
    journaling never crashes a run.
    """
    run_path = get_run_path(entry.run_id, state_dir)
    events_path = run_path / EVENTS_FILE

    with get_lock(entry.run_id):
        try:
            run_path.mkdir(parents=True, exist_ok=True)
            entry.seq = _next_seq(events_path)
            line = json.dumps(journal_entry_to_dict(entry), ensure_ascii=False)

            with open(events_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            logger.warning("Failed to append event for run '%s' at %s: %s", entry.run_id, events_path, e)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize event for run '%s': %s", entry.run_id, e)


def read_events(run_id: RunId, state_dir: Path) -> List[JournalEntry]:
    """Read all journal entries in order. Malformed lines are skipped."""
    events_path = get_run_path(run_id, state_dir) / EVENTS_FILE
    if not events_path.exists():
        return []

    entries: List[JournalEntry] = []
    try:
        with open(events_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(journal_entry_from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
    except OSError:
        return []

    return entries


# -----------------------------------------------------------------------------
# Mission I/O
# -----------------------------------------------------------------------------


def write_mission(mission: Mission, state_dir: Path) -> Path:
    """Write a Mission to mission.json atomically."""
    path = get_mission_path(mission.mission_id, state_dir) / MISSION_FILE
    with get_lock(mission.mission_id):
        _atomic_write_json(path, mission_to_dict(mission))
    return path


def read_mission(mission_id: MissionId, state_dir: Path) -> Optional[Mission]:
    path = get_mission_path(mission_id, state_dir) / MISSION_FILE
    data = _load_json_safe(path, mission_id, "mission")
    if data is None:
        return None
    try:
        return mission_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Invalid mission data for '%s' at %s: %s", mission_id, path, e)
        return None


def list_missions(state_dir: Path) -> List[MissionId]:
    missions_dir = get_missions_dir(state_dir)
    if not missions_dir.exists():
        return []
    return sorted(
        entry.name
        for entry in missions_dir.iterdir()
        if entry.is_dir() and (entry / MISSION_FILE).exists()
    )
