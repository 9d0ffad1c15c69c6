"""
CRP/VCR endpoints for the Conductor API.

Provides REST endpoints for:
- Listing the CRPs and VCRs of a run
- Responding to the pending CRP (optionally resuming the run)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...runtime.service import ConductorService
from ...runtime.types import crp_to_dict, vcr_to_dict
from ._deps import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["crps"])


class RespondRequest(BaseModel):
    """A human decision for a CRP."""

    decision: str = Field(..., min_length=1, description="One of the CRP's option ids")
    rationale: str = Field("", description="Why this option was chosen")
    notes: Optional[str] = Field(None, description="Additional notes for the agent")
    applies_to_future: bool = Field(False, description="Reuse for identical questions in this run")
    resume: bool = Field(False, description="Resume the run right after recording")


class RespondResponse(BaseModel):
    run_id: str
    crp_id: str
    vcr: Dict[str, Any]
    phase: str
    pending_crp: Optional[str] = None


@router.get("/{run_id}/crps")
async def list_crps(run_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """List CRPs of a run with their resolution."""
    crps: List[Dict[str, Any]] = []
    vcr_by_crp = {vcr.crp_id: vcr.vcr_id for vcr in service.protocol.list_vcrs(run_id)}
    for crp in service.protocol.list_crps(run_id):
        data = crp_to_dict(crp)
        data["vcr_id"] = vcr_by_crp.get(crp.crp_id)
        crps.append(data)
    state = service.get_run(run_id)
    return {"run_id": run_id, "pending_crp": state.pending_crp, "crps": crps}


@router.get("/{run_id}/vcrs")
async def list_vcrs(run_id: str, service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """List VCRs of a run."""
    return {"run_id": run_id, "vcrs": [vcr_to_dict(vcr) for vcr in service.protocol.list_vcrs(run_id)]}


@router.post("/{run_id}/crps/{crp_id}/respond", response_model=RespondResponse)
async def respond(
    run_id: str,
    crp_id: str,
    request: RespondRequest,
    service: ConductorService = Depends(get_service),
):
    """Record a VCR for the run's pending CRP."""
    vcr, state = await service.respond(
        run_id,
        crp_id,
        request.decision,
        request.rationale,
        notes=request.notes,
        applies_to_future=request.applies_to_future,
        resume=request.resume,
    )
    logger.info("VCR %s recorded via API for %s/%s", vcr.vcr_id, run_id, crp_id)
    return RespondResponse(
        run_id=run_id,
        crp_id=crp_id,
        vcr=vcr_to_dict(vcr),
        phase=state.phase.value,
        pending_crp=state.pending_crp,
    )
