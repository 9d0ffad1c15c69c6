"""
Mission endpoints for the Conductor API.

Provides REST endpoints for:
- Creating, listing and getting missions
- Submitting and approving plans
- Running a phase, a single task or the next runnable phase
- Retrying or skipping a task and cancelling a mission
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...runtime.service import ConductorService
from ...runtime.types import PhaseRunResult, TaskRunResult, mission_to_dict
from ._deps import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/missions", tags=["missions"])


# =============================================================================
# Pydantic Models
# =============================================================================


class PlanTask(BaseModel):
    title: str = Field(..., min_length=1)
    briefing: str = ""
    depends_on: List[str] = Field(default_factory=list)


class PlanPhase(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    tasks: List[PlanTask] = Field(default_factory=list)


class MissionCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    phases: Optional[List[PlanPhase]] = Field(None, description="Plan; without one the mission starts in planning")


class PlanSubmitRequest(BaseModel):
    phases: List[PlanPhase] = Field(..., min_length=1)
    needs_review: bool = True


class RunPhaseRequest(BaseModel):
    continue_on_failure: bool = False


class SkipTaskRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Recorded as the task error; defaults to skipped_by_user")


class PhaseRunResponse(BaseModel):
    mission_id: str
    phase_number: int
    status: str
    tasks_completed: int
    tasks_failed: int
    failed_task: Optional[str] = None
    tasks_blocked: List[str] = Field(default_factory=list)
    tasks_waiting: List[str] = Field(default_factory=list)


class TaskRunResponse(BaseModel):
    mission_id: str
    task_id: str
    status: str
    run_id: Optional[str] = None
    error: Optional[str] = None
    pending_crp: Optional[str] = None


def _plan(phases: List[PlanPhase]) -> List[Dict[str, Any]]:
    return [phase.model_dump() for phase in phases]


def _phase_response(mission_id: str, result: PhaseRunResult) -> PhaseRunResponse:
    return PhaseRunResponse(
        mission_id=mission_id,
        phase_number=result.phase_number,
        status=result.status.value,
        tasks_completed=result.tasks_completed,
        tasks_failed=result.tasks_failed,
        failed_task=result.failed_task,
        tasks_blocked=list(result.tasks_blocked),
        tasks_waiting=list(result.tasks_waiting),
    )


def _task_response(mission_id: str, result: TaskRunResult) -> TaskRunResponse:
    return TaskRunResponse(
        mission_id=mission_id,
        task_id=result.task_id,
        status=result.status.value,
        run_id=result.run_id,
        error=result.error,
        pending_crp=result.pending_crp,
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.get("")
async def list_missions(service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """List all missions."""
    missions = service.missions.list_missions()
    return {
        "missions": [
            {
                "mission_id": m.mission_id,
                "title": m.title,
                "status": m.status.value,
                "current_phase": m.stats.current_phase,
                "completed_tasks": m.stats.completed_tasks,
                "total_tasks": m.stats.total_tasks,
            }
            for m in missions
        ]
    }


@router.post("", status_code=201)
async def create_mission(
    request: MissionCreateRequest,
    service: ConductorService = Depends(get_service),
) -> Dict[str, Any]:
    """Create a mission, ready when a plan is given."""
    phases = _plan(request.phases) if request.phases else None
    mission = service.missions.create_mission(request.title, request.description, phases=phases)
    return mission_to_dict(mission)


@router.get("/{mission_id}")
async def get_mission(mission_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """Get a mission with its phases and tasks."""
    return mission_to_dict(service.missions.get_mission(mission_id))


@router.post("/{mission_id}/plan")
async def submit_plan(
    mission_id: str,
    request: PlanSubmitRequest,
    service: ConductorService = Depends(get_service),
) -> Dict[str, Any]:
    mission = service.missions.submit_plan(mission_id, _plan(request.phases), needs_review=request.needs_review)
    return mission_to_dict(mission)


@router.post("/{mission_id}/approve")
async def approve_plan(mission_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    return mission_to_dict(service.missions.approve_plan(mission_id))


@router.post("/{mission_id}/cancel")
async def cancel_mission(mission_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    return mission_to_dict(service.missions.cancel_mission(mission_id))


@router.post("/{mission_id}/phases/{phase_number}/run", response_model=PhaseRunResponse)
async def run_phase(
    mission_id: str,
    phase_number: int,
    request: Optional[RunPhaseRequest] = None,
    service: ConductorService = Depends(get_service),
):
    """Execute every unresolved task of a phase."""
    continue_on_failure = request.continue_on_failure if request is not None else False
    result = await service.missions.run_phase(mission_id, phase_number, continue_on_failure=continue_on_failure)
    return _phase_response(mission_id, result)


@router.post("/{mission_id}/tasks/{task_id}/run", response_model=TaskRunResponse)
async def run_task(mission_id: str, task_id: str, service: ConductorService = Depends(get_service)):
    """Execute a single task outside phase sequencing."""
    result = await service.missions.run_task(mission_id, task_id)
    return _task_response(mission_id, result)


@router.post("/{mission_id}/tasks/{task_id}/retry", response_model=TaskRunResponse)
async def retry_task(mission_id: str, task_id: str, service: ConductorService = Depends(get_service)):
    """Run a failed task again, or drive a task waiting on a human."""
    result = await service.missions.retry_task(mission_id, task_id)
    return _task_response(mission_id, result)


@router.post("/{mission_id}/advance")
async def advance_mission(
    mission_id: str,
    request: Optional[RunPhaseRequest] = None,
    service: ConductorService = Depends(get_service),
) -> Dict[str, Any]:
    """Run the next runnable phase of the mission."""
    continue_on_failure = request.continue_on_failure if request is not None else False
    result = await service.missions.run_next(mission_id, continue_on_failure=continue_on_failure)
    if result is None:
        return {"mission_id": mission_id, "phase": None, "message": "All phases completed"}
    return {"mission_id": mission_id, "phase": _phase_response(mission_id, result).model_dump(), "message": "Phase run"}


@router.post("/{mission_id}/tasks/{task_id}/skip", response_model=TaskRunResponse)
async def skip_task(
    mission_id: str,
    task_id: str,
    request: Optional[SkipTaskRequest] = None,
    service: ConductorService = Depends(get_service),
):
    """Mark a task skipped so its dependents and phase can proceed."""
    reason = request.reason if request is not None else None
    result = service.missions.skip_task(mission_id, task_id, reason=reason)
    return _task_response(mission_id, result)
