"""Mission, phase and task types.

A Mission owns an ordered list of phases; each phase owns an ordered list of
tasks. Phase ordering is significant: a phase is runnable only when every
lower-numbered phase is completed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ._ids import MissionId, RunId, TaskId, make_task_id
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow


class MissionStatus(str, Enum):
    """Overall mission status."""

    PLANNING = "planning"
    PLAN_REVIEW = "plan_review"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseStatus(str, Enum):
    """Status of a mission phase."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Status of a mission task."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    NEEDS_HUMAN = "needs_human"
    SKIPPED = "skipped"


# Statuses that satisfy a dependency and count towards phase completion.
RESOLVED_TASK_STATUSES = (TaskStatus.PASSED, TaskStatus.SKIPPED)


# Missions in these states accept run_phase / run_task.
EXECUTABLE_MISSION_STATUSES = (
    MissionStatus.READY,
    MissionStatus.IN_PROGRESS,
    MissionStatus.FAILED,
)


@dataclass
class MissionTask:
    """A unit of work executed through one pipeline run.

    ``error`` is set while the task is failed (or the skip reason once
    skipped); ``run_id`` names the run that last executed it. A task in
    needs_human keeps the run and its ``pending_crp`` so the same run is
    resumed once the CRP is answered.
    """

    task_id: TaskId
    title: str
    briefing: str = ""
    depends_on: List[TaskId] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    run_id: Optional[RunId] = None
    pending_crp: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_TASK_STATUSES

    def mark_started(self) -> None:
        self.started_at = _utcnow()
        self.completed_at = None

    def mark_passed(self, run_id: Optional[RunId] = None, attempts: int = 1) -> None:
        self.status = TaskStatus.PASSED
        self.run_id = run_id or self.run_id
        self.pending_crp = None
        self.error = None
        self.attempts = attempts
        self.completed_at = _utcnow()

    def mark_failed(self, error: str, run_id: Optional[RunId] = None, attempts: int = 1) -> None:
        self.status = TaskStatus.FAILED
        self.run_id = run_id or self.run_id
        self.pending_crp = None
        self.error = error
        self.attempts = attempts
        self.completed_at = _utcnow()

    def mark_waiting(self, run_id: RunId, crp_id: str, attempts: int = 1) -> None:
        self.status = TaskStatus.NEEDS_HUMAN
        self.run_id = run_id
        self.pending_crp = crp_id
        self.error = None
        self.attempts = attempts
        self.completed_at = None

    def mark_skipped(self, reason: str) -> None:
        self.status = TaskStatus.SKIPPED
        self.pending_crp = None
        self.error = reason
        self.completed_at = _utcnow()

    def reset(self) -> None:
        self.status = TaskStatus.PENDING
        self.run_id = None
        self.pending_crp = None
        self.error = None
        self.attempts = 0
        self.started_at = None
        self.completed_at = None


@dataclass
class MissionPhase:
    """An ordered stage of task work within a mission.

    ``summary`` is written when the phase completes and is handed to the
    tasks of the next phase as context.
    """

    number: int
    title: str
    description: str = ""
    tasks: List[MissionTask] = field(default_factory=list)
    status: PhaseStatus = PhaseStatus.PENDING
    summary: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def task_ids(self) -> List[TaskId]:
        return [task.task_id for task in self.tasks]

    def find_task(self, task_id: TaskId) -> Optional[MissionTask]:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None


@dataclass
class MissionStats:
    total_phases: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    waiting_tasks: int = 0
    current_phase: Optional[int] = None


@dataclass
class Mission:
    """A multi-phase, multi-task unit of work spanning many runs."""

    mission_id: MissionId
    title: str
    description: str = ""
    status: MissionStatus = MissionStatus.PLANNING
    phases: List[MissionPhase] = field(default_factory=list)
    stats: MissionStats = field(default_factory=MissionStats)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def find_phase(self, number: int) -> Optional[MissionPhase]:
        for phase in self.phases:
            if phase.number == number:
                return phase
        return None

    def find_task(self, task_id: TaskId) -> Optional[Tuple[MissionPhase, MissionTask]]:
        """Return (phase, task) for ``task_id`` or None."""
        for phase in self.phases:
            task = phase.find_task(task_id)
            if task is not None:
                return phase, task
        return None

    def recompute_stats(self) -> MissionStats:
        tasks = [task for phase in self.phases for task in phase.tasks]
        self.stats.total_phases = len(self.phases)
        self.stats.total_tasks = len(tasks)
        self.stats.completed_tasks = sum(1 for t in tasks if t.status == TaskStatus.PASSED)
        self.stats.failed_tasks = sum(1 for t in tasks if t.status == TaskStatus.FAILED)
        self.stats.skipped_tasks = sum(1 for t in tasks if t.status == TaskStatus.SKIPPED)
        self.stats.waiting_tasks = sum(1 for t in tasks if t.status == TaskStatus.NEEDS_HUMAN)
        return self.stats


@dataclass
class PhaseRunResult:
    """Outcome of run_phase.

    ``tasks_blocked`` lists tasks left alone because a dependency has not
    been resolved; ``tasks_waiting`` lists tasks whose run waits on a CRP.
    """

    phase_number: int
    status: PhaseStatus
    tasks_completed: int = 0
    tasks_failed: int = 0
    failed_task: Optional[TaskId] = None
    tasks_blocked: List[TaskId] = field(default_factory=list)
    tasks_waiting: List[TaskId] = field(default_factory=list)


@dataclass
class TaskRunResult:
    """Outcome of a single task execution."""

    task_id: TaskId
    status: TaskStatus
    run_id: Optional[RunId] = None
    error: Optional[str] = None
    pending_crp: Optional[str] = None


# =============================================================================
# Plan helpers
# =============================================================================


def phases_from_plan(plan: List[Dict[str, Any]]) -> List[MissionPhase]:
    """Build phases from a plan description.

    Each plan entry is ``{"title": ..., "description": ..., "tasks": [...]}``
    where each task is ``{"title": ..., "briefing": ..., "depends_on": [...]}``.
    Phases are numbered from 1 in list order and task IDs are assigned as
    task-<phase>.<index>.
    """
    phases: List[MissionPhase] = []
    for phase_index, phase_data in enumerate(plan, start=1):
        tasks = [
            MissionTask(
                task_id=make_task_id(phase_index, task_index),
                title=task_data.get("title", f"Task {phase_index}.{task_index}"),
                briefing=task_data.get("briefing", task_data.get("description", "")),
                depends_on=list(task_data.get("depends_on", [])),
            )
            for task_index, task_data in enumerate(phase_data.get("tasks", []), start=1)
        ]
        phases.append(
            MissionPhase(
                number=phase_index,
                title=phase_data.get("title", f"Phase {phase_index}"),
                description=phase_data.get("description", ""),
                tasks=tasks,
            )
        )
    return phases


def dependency_problems(phases: List[MissionPhase]) -> List[str]:
    """Describe every ``depends_on`` entry that could never be satisfied.

    A dependency must name another existing task in the same or an earlier
    phase, and dependencies within one phase must not form a cycle.
    """
    phase_of = {task.task_id: phase.number for phase in phases for task in phase.tasks}
    problems: List[str] = []
    for phase in phases:
        for task in phase.tasks:
            for dep_id in task.depends_on:
                if dep_id == task.task_id:
                    problems.append(f"{task.task_id} depends on itself")
                elif dep_id not in phase_of:
                    problems.append(f"{task.task_id} depends on unknown task {dep_id}")
                elif phase_of[dep_id] > phase.number:
                    problems.append(f"{task.task_id} depends on {dep_id} from later phase {phase_of[dep_id]}")
        looped = _dependency_cycle(phase)
        if looped is not None:
            problems.append(f"phase {phase.number} has a dependency cycle through {looped}")
    return problems


def _dependency_cycle(phase: MissionPhase) -> Optional[TaskId]:
    ids = set(phase.task_ids)
    edges = {t.task_id: [d for d in t.depends_on if d in ids and d != t.task_id] for t in phase.tasks}
    visiting: set = set()
    done: set = set()

    def visit(task_id: TaskId) -> Optional[TaskId]:
        if task_id in done:
            return None
        if task_id in visiting:
            return task_id
        visiting.add(task_id)
        for dep_id in edges[task_id]:
            found = visit(dep_id)
            if found is not None:
                return found
        visiting.discard(task_id)
        done.add(task_id)
        return None

    for task_id in edges:
        found = visit(task_id)
        if found is not None:
            return found
    return None


# =============================================================================
# Serialization Functions
# =============================================================================


def mission_task_to_dict(task: MissionTask) -> Dict[str, Any]:
    return {
        "task_id": task.task_id,
        "title": task.title,
        "briefing": task.briefing,
        "depends_on": list(task.depends_on),
        "status": task.status.value,
        "run_id": task.run_id,
        "pending_crp": task.pending_crp,
        "error": task.error,
        "attempts": task.attempts,
        "started_at": _datetime_to_iso(task.started_at),
        "completed_at": _datetime_to_iso(task.completed_at),
    }


def mission_task_from_dict(data: Dict[str, Any]) -> MissionTask:
    return MissionTask(
        task_id=data["task_id"],
        title=data.get("title", ""),
        briefing=data.get("briefing", ""),
        depends_on=list(data.get("depends_on", [])),
        status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
        run_id=data.get("run_id"),
        pending_crp=data.get("pending_crp"),
        error=data.get("error"),
        attempts=int(data.get("attempts", 0)),
        started_at=_iso_to_datetime(data.get("started_at")),
        completed_at=_iso_to_datetime(data.get("completed_at")),
    )


def mission_phase_to_dict(phase: MissionPhase) -> Dict[str, Any]:
    return {
        "number": phase.number,
        "title": phase.title,
        "description": phase.description,
        "status": phase.status.value,
        "summary": phase.summary,
        "tasks": [mission_task_to_dict(t) for t in phase.tasks],
        "started_at": _datetime_to_iso(phase.started_at),
        "completed_at": _datetime_to_iso(phase.completed_at),
    }


def mission_phase_from_dict(data: Dict[str, Any]) -> MissionPhase:
    return MissionPhase(
        number=int(data["number"]),
        title=data.get("title", ""),
        description=data.get("description", ""),
        status=PhaseStatus(data.get("status", PhaseStatus.PENDING.value)),
        tasks=[mission_task_from_dict(t) for t in data.get("tasks", [])],
        summary=data.get("summary"),
        started_at=_iso_to_datetime(data.get("started_at")),
        completed_at=_iso_to_datetime(data.get("completed_at")),
    )


def mission_to_dict(mission: Mission) -> Dict[str, Any]:
    """Convert Mission to a dictionary for serialization."""
    return {
        "mission_id": mission.mission_id,
        "title": mission.title,
        "description": mission.description,
        "status": mission.status.value,
        "phases": [mission_phase_to_dict(p) for p in mission.phases],
        "stats": {
            "total_phases": mission.stats.total_phases,
            "total_tasks": mission.stats.total_tasks,
            "completed_tasks": mission.stats.completed_tasks,
            "failed_tasks": mission.stats.failed_tasks,
            "skipped_tasks": mission.stats.skipped_tasks,
            "waiting_tasks": mission.stats.waiting_tasks,
            "current_phase": mission.stats.current_phase,
        },
        "created_at": _datetime_to_iso(mission.created_at),
        "updated_at": _datetime_to_iso(mission.updated_at),
        "completed_at": _datetime_to_iso(mission.completed_at),
    }


def mission_from_dict(data: Dict[str, Any]) -> Mission:
    """Parse Mission from a dictionary."""
    stats = data.get("stats", {})
    now = _utcnow()
    phases = sorted(
        (mission_phase_from_dict(p) for p in data.get("phases", [])),
        key=lambda p: p.number,
    )
    return Mission(
        mission_id=data["mission_id"],
        title=data.get("title", ""),
        description=data.get("description", ""),
        status=MissionStatus(data.get("status", MissionStatus.PLANNING.value)),
        phases=phases,
        stats=MissionStats(
            total_phases=int(stats.get("total_phases", 0)),
            total_tasks=int(stats.get("total_tasks", 0)),
            completed_tasks=int(stats.get("completed_tasks", 0)),
            failed_tasks=int(stats.get("failed_tasks", 0)),
            skipped_tasks=int(stats.get("skipped_tasks", 0)),
            waiting_tasks=int(stats.get("waiting_tasks", 0)),
            current_phase=stats.get("current_phase"),
        ),
        created_at=_iso_to_datetime(data.get("created_at")) or now,
        updated_at=_iso_to_datetime(data.get("updated_at")) or now,
        completed_at=_iso_to_datetime(data.get("completed_at")),
    )
