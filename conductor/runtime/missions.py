"""
missions.py - Mission execution engine

A mission is an ordered list of phases, each an ordered list of tasks. Every
task is executed through a TaskExecutor (by default one pipeline run per
task) and wrapped by the RetryExecutor with context {run=mission id,
agent=task id}.

Phase ordering:
    A phase is runnable only when every lower-numbered phase is completed.
    ``find_next_phase`` returns the lowest-numbered phase that is not
    completed, so a failed phase is picked up again before later ones.

Task dependencies:
    ``depends_on`` may name tasks of the same or an earlier phase; plans
    with dependencies that could never resolve are rejected. A task whose
    dependency has not passed (or been skipped) is left pending by
    ``run_phase``; ``run_task`` refuses to run it.

Human checkpoints:
    A task whose run stops on a CRP is marked needs_human and keeps the run.
    Running the task again after the CRP is answered resumes that same run.

Phase context:
    A completed phase gets a short summary which is prepended to the
    briefing of every task in the next phase.

Usage:
    engine = MissionEngine(state_dir, OrchestratorTaskExecutor(orchestrator))
    mission = engine.create_mission("Billing v2", phases=plan)
    result = asyncio.run(engine.run_phase(mission.mission_id, 1))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import storage
from .errors import (
    AgentValidationError,
    AwaitingHumanError,
    ConductorError,
    NotFoundError,
    PreconditionFailedError,
    RetryExhaustedError,
    RunCancelledError,
    RunFailedError,
)
from .events import EventStream
from .retry import CancelSignals, RetryExecutor
from .types import (
    EXECUTABLE_MISSION_STATUSES,
    Mission,
    MissionId,
    MissionPhase,
    MissionPhaseFinished,
    MissionStatus,
    MissionTask,
    Phase,
    PhaseRunResult,
    PhaseStatus,
    RetryContext,
    RunId,
    RunState,
    TaskFinished,
    TaskId,
    TaskRunResult,
    TaskStarted,
    TaskStatus,
    Working,
    _utcnow,
    dependency_problems,
    generate_mission_id,
    phases_from_plan,
)

# Module logger
logger = logging.getLogger(__name__)

STOPPED_BY_USER = "stopped_by_user"
SKIPPED_BY_USER = "skipped_by_user"


# =============================================================================
# Briefings and phase context
# =============================================================================


def summarize_phase(phase: MissionPhase) -> str:
    """Context handed from a completed phase to the next one."""
    lines = [f"Phase {phase.number} ({phase.title}) completed."]
    if phase.description:
        lines.append(phase.description)
    for task in phase.tasks:
        line = f"- {task.task_id} {task.title}: {task.status.value}"
        if task.status == TaskStatus.SKIPPED and task.error:
            line += f" ({task.error})"
        elif task.run_id:
            line += f" (run {task.run_id})"
        lines.append(line)
    return "\n".join(lines)


def compose_briefing(mission: Mission, phase: MissionPhase, task: MissionTask) -> str:
    """Task title and briefing, prefixed with the previous phase's summary."""
    body = task.title if not task.briefing else f"{task.title}\n\n{task.briefing}"
    previous = mission.find_phase(phase.number - 1)
    if previous is None or not previous.summary:
        return body
    return f"## Previous Context\n\n{previous.summary}\n\n---\n\n{body}"


# =============================================================================
# Task executors
# =============================================================================


class TaskExecutor(ABC):
    """Executes a single mission task.

    ``execute`` returns the id of the pipeline run that did the work (if
    any) and raises a ConductorError when the task did not pass.
    AwaitingHumanError marks the task as waiting on a human instead of
    failed.
    """

    @abstractmethod
    async def execute(self, mission: Mission, phase: MissionPhase, task: MissionTask) -> Optional[RunId]:
        ...

    def cancel(self, task_id: TaskId) -> bool:
        """Interrupt the in-flight execution of ``task_id``. Optional."""
        return False


class OrchestratorTaskExecutor(TaskExecutor):
    """Runs each task as one pipeline run driven by the Orchestrator.

    ready_for_merge and completed count as passed. A failed run raises
    RunFailedError and a run blocked on a CRP raises AwaitingHumanError;
    neither is retried, since the run has already used its own retry budget.
    A task waiting on a human drives its existing run again (resuming it
    once a VCR is recorded) rather than starting a new one.
    """

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator
        self._active: Dict[TaskId, RunId] = {}

    async def execute(self, mission: Mission, phase: MissionPhase, task: MissionTask) -> Optional[RunId]:
        run_id = self._existing_run(task)
        if run_id is None:
            run_id = self.orchestrator.start_run(compose_briefing(mission, phase, task)).run_id
        self._active[task.task_id] = run_id
        try:
            state = await self._drive(run_id)
        finally:
            self._active.pop(task.task_id, None)

        if state.phase in (Phase.READY_FOR_MERGE, Phase.COMPLETED):
            return run_id
        if state.phase == Phase.WAITING_HUMAN:
            raise AwaitingHumanError(run_id, state.pending_crp)
        error = state.errors[-1] if state.errors else f"run {run_id} is {state.phase.value}"
        raise RunFailedError(run_id, error)

    def _existing_run(self, task: MissionTask) -> Optional[RunId]:
        if task.status != TaskStatus.NEEDS_HUMAN or task.run_id is None:
            return None
        try:
            self.orchestrator.get_state(task.run_id)
        except NotFoundError:
            logger.warning("Run %s of %s is gone; starting a new run", task.run_id, task.task_id)
            return None
        return task.run_id

    async def _drive(self, run_id: RunId) -> RunState:
        state = self.orchestrator.get_state(run_id)
        if isinstance(state.cursor, Working) and state.cursor.resume_vcr is not None:
            return await self.orchestrator.resume_run(run_id)
        return await self.orchestrator.advance(run_id)

    def cancel(self, task_id: TaskId) -> bool:
        run_id = self._active.get(task_id)
        if run_id is None:
            return False
        try:
            self.orchestrator.stop_run(run_id)
        except PreconditionFailedError:
            return False
        return True


def find_next_phase(mission: Mission) -> Optional[MissionPhase]:
    """Lowest-numbered phase that is not completed, or None."""
    for phase in sorted(mission.phases, key=lambda p: p.number):
        if phase.status != PhaseStatus.COMPLETED:
            return phase
    return None


def _unmet_dependencies(mission: Mission, task: MissionTask) -> List[TaskId]:
    unmet: List[TaskId] = []
    for dep_id in task.depends_on:
        found = mission.find_task(dep_id)
        if found is None or not found[1].is_resolved:
            unmet.append(dep_id)
    return unmet


def _validated_plan(plan: List[Dict[str, Any]]) -> List[MissionPhase]:
    phases = phases_from_plan(plan)
    problems = dependency_problems(phases)
    if problems:
        raise AgentValidationError(f"invalid task dependencies: {'; '.join(problems)}", {"problems": problems})
    return phases


# =============================================================================
# Engine
# =============================================================================


class MissionEngine:
    """Plans and executes missions phase by phase.

    Attributes:
        state_dir: Root of persisted state.
        executor: TaskExecutor running individual tasks.
        retry: RetryExecutor wrapping every task execution.
        events: Typed event stream.
    """

    def __init__(
        self,
        state_dir: Path,
        executor: TaskExecutor,
        retry: Optional[RetryExecutor] = None,
        events: Optional[EventStream] = None,
    ):
        self.state_dir = Path(state_dir)
        self.executor = executor
        self.events = events or EventStream()
        self.retry = retry or RetryExecutor(events=self.events)
        self._cancel = CancelSignals()
        self._running_task: Dict[MissionId, TaskId] = {}

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def get_mission(self, mission_id: MissionId) -> Mission:
        """Load a mission.

        Raises:
            NotFoundError: Unknown or unreadable mission.
        """
        mission = storage.read_mission(mission_id, self.state_dir)
        if mission is None:
            raise NotFoundError("mission", mission_id)
        return mission

    def list_missions(self) -> List[Mission]:
        missions = []
        for mission_id in storage.list_missions(self.state_dir):
            mission = storage.read_mission(mission_id, self.state_dir)
            if mission is not None:
                missions.append(mission)
        return missions

    def _save(self, mission: Mission) -> Mission:
        self._refresh(mission)
        mission.updated_at = _utcnow()
        storage.write_mission(mission, self.state_dir)
        return mission

    @staticmethod
    def _refresh(mission: Mission) -> None:
        """Recompute stats and the derived mission status."""
        mission.recompute_stats()
        next_phase = find_next_phase(mission)
        mission.stats.current_phase = next_phase.number if next_phase else None

        if mission.status in (MissionStatus.PLANNING, MissionStatus.PLAN_REVIEW, MissionStatus.CANCELLED):
            return
        if mission.phases and next_phase is None:
            if mission.status != MissionStatus.COMPLETED:
                mission.status = MissionStatus.COMPLETED
                mission.completed_at = _utcnow()
        elif any(phase.status == PhaseStatus.FAILED for phase in mission.phases):
            mission.status = MissionStatus.FAILED
            mission.completed_at = None
        elif any(
            phase.status != PhaseStatus.PENDING or any(t.status != TaskStatus.PENDING for t in phase.tasks)
            for phase in mission.phases
        ):
            mission.status = MissionStatus.IN_PROGRESS
            mission.completed_at = None
        else:
            mission.status = MissionStatus.READY
            mission.completed_at = None

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def create_mission(
        self,
        title: str,
        description: str = "",
        phases: Optional[List[Dict[str, Any]]] = None,
    ) -> Mission:
        """Create a mission; with a plan it is ready, otherwise planning.

        Raises:
            AgentValidationError: Empty title or unsatisfiable dependencies.
        """
        if not title or not title.strip():
            raise AgentValidationError("mission title must not be empty")
        mission = Mission(mission_id=generate_mission_id(), title=title, description=description)
        if phases:
            mission.phases = _validated_plan(phases)
            mission.status = MissionStatus.READY
        self._save(mission)
        logger.info("Created mission %s (%s, %d phases)", mission.mission_id, mission.status.value, len(mission.phases))
        return mission

    def submit_plan(
        self,
        mission_id: MissionId,
        phases: List[Dict[str, Any]],
        needs_review: bool = True,
    ) -> Mission:
        """Attach a plan to a planning mission.

        Raises:
            PreconditionFailedError: The mission is past planning.
            AgentValidationError: Empty plan or unsatisfiable dependencies.
        """
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            if mission.status not in (MissionStatus.PLANNING, MissionStatus.PLAN_REVIEW):
                raise PreconditionFailedError(
                    f"Mission {mission_id} is {mission.status.value}; the plan can no longer change",
                    {"mission_id": mission_id, "status": mission.status.value},
                )
            if not phases:
                raise AgentValidationError("plan must contain at least one phase", {"mission_id": mission_id})
            mission.phases = _validated_plan(phases)
            mission.status = MissionStatus.PLAN_REVIEW if needs_review else MissionStatus.READY
            self._save(mission)

        logger.info("Plan submitted for mission %s (%s)", mission_id, mission.status.value)
        return mission

    def approve_plan(self, mission_id: MissionId) -> Mission:
        """plan_review -> ready."""
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            if mission.status != MissionStatus.PLAN_REVIEW:
                raise PreconditionFailedError(
                    f"Mission {mission_id} is {mission.status.value}, not plan_review",
                    {"mission_id": mission_id, "status": mission.status.value},
                )
            mission.status = MissionStatus.READY
            self._save(mission)
        logger.info("Plan approved for mission %s", mission_id)
        return mission

    def cancel_mission(self, mission_id: MissionId) -> Mission:
        """Cancel a mission and interrupt its running task, if any."""
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            if mission.status in (MissionStatus.COMPLETED, MissionStatus.CANCELLED):
                raise PreconditionFailedError(
                    f"Mission {mission_id} is already {mission.status.value}",
                    {"mission_id": mission_id, "status": mission.status.value},
                )
            mission.status = MissionStatus.CANCELLED
            self._save(mission)

        self._interrupt(mission_id)
        logger.info("Cancelled mission %s", mission_id)
        return mission

    def stop_task(self, mission_id: MissionId) -> Optional[TaskId]:
        """Stop the task currently running in a mission.

        The task fails with ``stopped_by_user``. Returns the stopped task id,
        or None when nothing was running.
        """
        self.get_mission(mission_id)
        return self._interrupt(mission_id)

    def _interrupt(self, mission_id: MissionId) -> Optional[TaskId]:
        task_id = self._running_task.get(mission_id)
        if task_id is None:
            return None
        self._cancel.signal(mission_id)
        self.executor.cancel(task_id)
        logger.info("Stop requested for task %s of mission %s", task_id, mission_id)
        return task_id

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _check_executable(self, mission: Mission) -> None:
        if mission.status not in EXECUTABLE_MISSION_STATUSES:
            raise PreconditionFailedError(
                f"Mission {mission.mission_id} is {mission.status.value} and cannot execute tasks",
                {"mission_id": mission.mission_id, "status": mission.status.value},
            )

    def _get_phase(self, mission: Mission, phase_number: int) -> MissionPhase:
        phase = mission.find_phase(phase_number)
        if phase is None:
            raise NotFoundError("phase", str(phase_number))
        return phase

    async def run_phase(
        self,
        mission_id: MissionId,
        phase_number: int,
        continue_on_failure: bool = False,
    ) -> PhaseRunResult:
        """Execute every unresolved task of a phase in order.

        Stops at the first failed task unless ``continue_on_failure``. Tasks
        left waiting on a human do not stop the phase.

        Raises:
            NotFoundError: Unknown mission or phase.
            PreconditionFailedError: The mission is not executable or an
                earlier phase is not completed.
        """
        mission = self.get_mission(mission_id)
        self._check_executable(mission)
        phase = self._get_phase(mission, phase_number)
        blocking = [
            p.number for p in mission.phases if p.number < phase_number and p.status != PhaseStatus.COMPLETED
        ]
        if blocking:
            raise PreconditionFailedError(
                f"Phase {phase_number} of {mission_id} is blocked by incomplete phase {blocking[0]}",
                {"mission_id": mission_id, "phase": phase_number, "blocked_by": blocking},
            )

        phase.status = PhaseStatus.IN_PROGRESS
        if phase.started_at is None:
            phase.started_at = _utcnow()
        phase.completed_at = None
        self._save(mission)
        logger.info("Mission %s: running phase %d (%s)", mission_id, phase_number, phase.title)

        result = PhaseRunResult(phase_number=phase_number, status=PhaseStatus.IN_PROGRESS)
        try:
            for task_id in phase.task_ids:
                mission = self.get_mission(mission_id)
                if mission.status == MissionStatus.CANCELLED:
                    logger.info("Mission %s cancelled; stopping phase %d", mission_id, phase_number)
                    break
                phase = self._get_phase(mission, phase_number)
                task = phase.find_task(task_id)
                if task.is_resolved:
                    continue
                unmet = _unmet_dependencies(mission, task)
                if unmet:
                    logger.info("Leaving %s pending: waiting on %s", task_id, ", ".join(unmet))
                    result.tasks_blocked.append(task_id)
                    continue

                outcome = await self._execute_task(mission, phase, task)
                if outcome.status == TaskStatus.PASSED:
                    result.tasks_completed += 1
                elif outcome.status == TaskStatus.NEEDS_HUMAN:
                    result.tasks_waiting.append(task_id)
                else:
                    result.tasks_failed += 1
                    if result.failed_task is None:
                        result.failed_task = task_id
                    if not continue_on_failure:
                        break
        finally:
            phase = self._settle(mission_id, phase_number)
        result.status = phase.status

        logger.info(
            "Mission %s: phase %d %s (%d passed, %d failed, %d waiting)",
            mission_id,
            phase_number,
            phase.status.value,
            result.tasks_completed,
            result.tasks_failed,
            len(result.tasks_waiting),
        )
        self.events.publish(
            MissionPhaseFinished(
                mission_id=mission_id,
                phase_number=phase_number,
                status=phase.status.value,
                tasks_completed=result.tasks_completed,
                tasks_failed=result.tasks_failed,
            )
        )
        return result

    async def run_task(self, mission_id: MissionId, task_id: TaskId) -> TaskRunResult:
        """Execute a single task outside phase sequencing.

        A task waiting on a human drives its existing run again.

        Raises:
            NotFoundError: Unknown mission or task.
            PreconditionFailedError: The task already passed or was skipped,
                has unmet dependencies or the mission is not executable.
        """
        mission = self.get_mission(mission_id)
        self._check_executable(mission)
        phase, task = self._find_task(mission, task_id)
        if task.is_resolved:
            raise PreconditionFailedError(
                f"Task {task_id} is already {task.status.value}",
                {"mission_id": mission_id, "task_id": task_id, "status": task.status.value},
            )
        unmet = _unmet_dependencies(mission, task)
        if unmet:
            raise PreconditionFailedError(
                f"Task {task_id} depends on unfinished tasks: {', '.join(unmet)}",
                {"mission_id": mission_id, "task_id": task_id, "unmet": unmet},
            )

        try:
            return await self._execute_task(mission, phase, task)
        finally:
            self._settle(mission_id, phase.number, only_if_resolved=True)

    async def run_next(self, mission_id: MissionId, continue_on_failure: bool = False) -> Optional[PhaseRunResult]:
        """Run the next runnable phase; None when every phase is completed."""
        mission = self.get_mission(mission_id)
        phase = find_next_phase(mission)
        if phase is None:
            logger.info("Mission %s has no phase left to run", mission_id)
            return None
        return await self.run_phase(mission_id, phase.number, continue_on_failure=continue_on_failure)

    async def retry_task(self, mission_id: MissionId, task_id: TaskId) -> TaskRunResult:
        """Run a failed task again, or drive a task waiting on a human.

        A failed task is reset to pending and gets a new run; a task in
        needs_human keeps its run, which resumes once the CRP is answered.
        """
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            phase, task = self._find_task(mission, task_id)
            if task.status not in (TaskStatus.FAILED, TaskStatus.NEEDS_HUMAN):
                raise PreconditionFailedError(
                    f"Task {task_id} is {task.status.value}, not failed or needs_human",
                    {"mission_id": mission_id, "task_id": task_id},
                )
            if task.status == TaskStatus.FAILED:
                task.reset()
            if phase.status == PhaseStatus.FAILED:
                phase.status = PhaseStatus.IN_PROGRESS
            self._save(mission)
        self.retry.reset_attempts(RetryContext(run_id=mission_id, agent=task_id))
        return await self.run_task(mission_id, task_id)

    def skip_task(self, mission_id: MissionId, task_id: TaskId, reason: Optional[str] = None) -> TaskRunResult:
        """Mark a task skipped so that its phase and dependents can proceed.

        Raises:
            NotFoundError: Unknown mission or task.
            PreconditionFailedError: The task is running, already resolved or
                the mission is not executable.
        """
        reason = reason or SKIPPED_BY_USER
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            self._check_executable(mission)
            phase, task = self._find_task(mission, task_id)
            if self._running_task.get(mission_id) == task_id:
                raise PreconditionFailedError(
                    f"Task {task_id} is running; stop it before skipping",
                    {"mission_id": mission_id, "task_id": task_id},
                )
            if task.is_resolved:
                raise PreconditionFailedError(
                    f"Task {task_id} is already {task.status.value}",
                    {"mission_id": mission_id, "task_id": task_id, "status": task.status.value},
                )
            task.mark_skipped(reason)
            if phase.status != PhaseStatus.PENDING or all(t.status != TaskStatus.PENDING for t in phase.tasks):
                self._settle_phase(phase)
            self._save(mission)

        logger.info("Mission %s: skipped %s (%s)", mission_id, task_id, reason)
        self.events.publish(
            TaskFinished(
                mission_id=mission_id,
                task_id=task_id,
                status=task.status.value,
                run_id=task.run_id,
                error=reason,
            )
        )
        return TaskRunResult(task_id=task_id, status=task.status, run_id=task.run_id, error=reason)

    @staticmethod
    def _find_task(mission: Mission, task_id: TaskId):
        found = mission.find_task(task_id)
        if found is None:
            raise NotFoundError("task", task_id)
        return found

    def _settle(self, mission_id: MissionId, phase_number: int, only_if_resolved: bool = False) -> MissionPhase:
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            phase = self._get_phase(mission, phase_number)
            if not only_if_resolved or all(t.status != TaskStatus.PENDING for t in phase.tasks):
                self._settle_phase(phase)
            self._save(mission)
        return phase

    @staticmethod
    def _settle_phase(phase: MissionPhase) -> None:
        statuses = [task.status for task in phase.tasks]
        if all(task.is_resolved for task in phase.tasks):
            if phase.status != PhaseStatus.COMPLETED:
                phase.status = PhaseStatus.COMPLETED
                phase.completed_at = _utcnow()
                phase.summary = summarize_phase(phase)
        elif TaskStatus.FAILED in statuses:
            phase.status = PhaseStatus.FAILED
            phase.completed_at = _utcnow()
        else:
            phase.status = PhaseStatus.IN_PROGRESS
            phase.completed_at = None

    async def _execute_task(self, mission: Mission, phase: MissionPhase, task: MissionTask) -> TaskRunResult:
        mission_id = mission.mission_id
        task_id = task.task_id
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            phase = self._get_phase(mission, phase.number)
            task = phase.find_task(task_id)
            task.mark_started()
            if phase.status == PhaseStatus.PENDING:
                phase.status = PhaseStatus.IN_PROGRESS
                phase.started_at = _utcnow()
            self._save(mission)

        self.events.publish(TaskStarted(mission_id=mission_id, task_id=task_id))
        logger.info("Mission %s: starting %s (%s)", mission_id, task_id, task.title)

        attempts = 0

        async def attempt() -> Optional[RunId]:
            nonlocal attempts
            attempts += 1
            return await self.executor.execute(mission, phase, task)

        cancel_event = self._cancel.arm(mission_id)
        self._running_task[mission_id] = task_id
        run_id: Optional[RunId] = None
        error: Optional[str] = None
        waiting: Optional[AwaitingHumanError] = None
        try:
            run_id = await self.retry.execute_with_retry(
                attempt,
                RetryContext(run_id=mission_id, agent=task_id),
                cancel_event=cancel_event,
            )
        except AwaitingHumanError as e:
            run_id = e.run_id
            waiting = e
        except RunFailedError as e:
            run_id = e.run_id
            error = e.message
        except RetryExhaustedError as e:
            error = str(e)
        except RunCancelledError:
            error = STOPPED_BY_USER
        except ConductorError as e:
            self._record_task(mission_id, task_id, None, str(e), attempts)
            raise
        finally:
            self._running_task.pop(mission_id, None)
            self._cancel.disarm(mission_id, cancel_event)

        if cancel_event.is_set():
            error = STOPPED_BY_USER
            waiting = None
        if waiting is not None:
            return self._record_task(mission_id, task_id, run_id, None, attempts, pending_crp=waiting.crp_id)
        return self._record_task(mission_id, task_id, run_id, error, attempts)

    def _record_task(
        self,
        mission_id: MissionId,
        task_id: TaskId,
        run_id: Optional[RunId],
        error: Optional[str],
        attempts: int,
        pending_crp: Optional[str] = None,
    ) -> TaskRunResult:
        with storage.get_lock(mission_id):
            mission = self.get_mission(mission_id)
            _, task = mission.find_task(task_id)
            if pending_crp is not None:
                task.mark_waiting(run_id, pending_crp, attempts)
            elif error is None:
                task.mark_passed(run_id, attempts)
            else:
                task.mark_failed(error, run_id, attempts)
            self._save(mission)

        if pending_crp is not None:
            logger.info("Mission %s: %s waiting on %s (run %s)", mission_id, task_id, pending_crp, run_id)
        elif error is None:
            logger.info("Mission %s: %s passed (run %s)", mission_id, task_id, run_id)
        else:
            logger.warning("Mission %s: %s failed: %s", mission_id, task_id, error)
        self.events.publish(
            TaskFinished(
                mission_id=mission_id,
                task_id=task_id,
                status=task.status.value,
                run_id=task.run_id,
                error=error,
            )
        )
        return TaskRunResult(
            task_id=task_id,
            status=task.status,
            run_id=task.run_id,
            error=error,
            pending_crp=task.pending_crp,
        )
