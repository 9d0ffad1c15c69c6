"""
Run control endpoints for the Conductor API.

Provides REST endpoints for:
- Starting runs (advanced in the background)
- Listing runs and getting run state
- Resuming runs after a VCR
- Stopping, retrying and completing runs
- Reading the run journal
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from ...runtime.errors import ConductorError
from ...runtime.orchestrator import STOPPED_BY_USER
from ...runtime.service import ConductorService
from ...runtime.types import RunState, _datetime_to_iso, journal_entry_to_dict, run_state_to_dict
from ._deps import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


# =============================================================================
# Pydantic Models
# =============================================================================


class RunStartRequest(BaseModel):
    """Request to start a new run."""

    briefing: str = Field(..., min_length=1, description="Goal of the run")
    run_id: Optional[str] = Field(None, description="Custom run ID (generated if not provided)")
    max_iterations: Optional[int] = Field(None, ge=1, description="Iteration limit (config default if omitted)")
    advance: bool = Field(True, description="Start executing phases in the background")


class RunSummary(BaseModel):
    """Run summary for list endpoint."""

    run_id: str
    phase: str
    iteration: int
    max_iterations: int
    pending_crp: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None


class RunListResponse(BaseModel):
    """Response for list runs endpoint."""

    runs: List[RunSummary]


class RunActionResponse(BaseModel):
    """Response for run control actions."""

    run_id: str
    phase: str
    message: str


class StopRequest(BaseModel):
    reason: str = Field(STOPPED_BY_USER, min_length=1)


def _summary(state: RunState) -> RunSummary:
    return RunSummary(
        run_id=state.run_id,
        phase=state.phase.value,
        iteration=state.iteration,
        max_iterations=state.max_iterations,
        pending_crp=state.pending_crp,
        started_at=_datetime_to_iso(state.started_at),
        updated_at=_datetime_to_iso(state.updated_at),
    )


async def _advance_in_background(service: ConductorService, run_id: str) -> None:
    try:
        await service.orchestrator.advance(run_id)
    except ConductorError as e:
        logger.warning("Background advance of run %s stopped: %s", run_id, e)


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", status_code=201)
async def start_run(
    request: RunStartRequest,
    background: BackgroundTasks,
    service: ConductorService = Depends(get_service),
) -> Dict[str, Any]:
    """Start a new run in the refine phase.

    When ``advance`` is set the run is driven until it waits for a human,
    is ready for merge or fails, after the response is sent.
    """
    state = service.orchestrator.start_run(
        request.briefing,
        max_iterations=request.max_iterations,
        run_id=request.run_id,
    )
    if request.advance:
        background.add_task(_advance_in_background, service, state.run_id)
    return run_state_to_dict(state)


@router.get("", response_model=RunListResponse)
async def list_runs(service: ConductorService = Depends(get_service)):
    """List all runs, most recently started first."""
    return RunListResponse(runs=[_summary(state) for state in service.list_runs()])


@router.get("/{run_id}")
async def get_run(run_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """Get the full state of a run."""
    return run_state_to_dict(service.get_run(run_id))


@router.post("/{run_id}/resume", response_model=RunActionResponse)
async def resume_run(run_id: str, service: ConductorService = Depends(get_service)):
    """Re-enter the phase that raised the last CRP with the recorded decision."""
    state = await service.orchestrator.resume_run(run_id)
    return RunActionResponse(run_id=run_id, phase=state.phase.value, message="Run resumed")


@router.post("/{run_id}/stop", response_model=RunActionResponse)
async def stop_run(
    run_id: str,
    request: Optional[StopRequest] = None,
    service: ConductorService = Depends(get_service),
):
    """Stop a run; it moves to failed."""
    reason = request.reason if request is not None else STOPPED_BY_USER
    state = service.orchestrator.stop_run(run_id, reason=reason)
    return RunActionResponse(run_id=run_id, phase=state.phase.value, message=f"Run stopped: {reason}")


@router.post("/{run_id}/retry", response_model=RunActionResponse)
async def retry_run(
    run_id: str,
    background: BackgroundTasks,
    service: ConductorService = Depends(get_service),
):
    """Put a failed run back into its failed phase and advance it in the background."""
    state = service.orchestrator.retry_failed_phase(run_id)
    background.add_task(_advance_in_background, service, run_id)
    return RunActionResponse(run_id=run_id, phase=state.phase.value, message="Retrying failed phase")


@router.post("/{run_id}/complete", response_model=RunActionResponse)
async def complete_run(run_id: str, service: ConductorService = Depends(get_service)):
    """Mark a ready_for_merge run as completed."""
    state = service.orchestrator.complete_run(run_id)
    return RunActionResponse(run_id=run_id, phase=state.phase.value, message="Run completed")


@router.get("/{run_id}/events")
async def get_run_events(run_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """The run journal, in sequence order."""
    return {"run_id": run_id, "events": [journal_entry_to_dict(e) for e in service.get_events(run_id)]}
