"""
Recovery endpoints for the Conductor API.

Provides REST endpoints for:
- Detecting interrupted runs
- Applying the resume strategy of one run
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...runtime.recovery import interrupted_run_to_dict, recovery_result_to_dict
from ...runtime.service import ConductorService
from ._deps import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recovery", tags=["recovery"])


class RecoverRequest(BaseModel):
    confirmed: bool = Field(False, description="Required when auto_recover is disabled")


@router.get("")
async def detect_interrupted_runs(service: ConductorService = Depends(get_service)) -> Dict[str, Any]:
    """List interrupted runs with their classification and resume strategy."""
    records = service.recovery.detect_interrupted_runs()
    return {
        "auto_recover": service.recovery.auto_recover,
        "runs": [interrupted_run_to_dict(record) for record in records],
    }


@router.post("/{run_id}")
async def recover_run(
    run_id: str,
    request: RecoverRequest,
    service: ConductorService = Depends(get_service),
) -> Dict[str, Any]:
    """Apply the resume strategy of an interrupted run."""
    result = await service.recovery.recover(run_id, confirmed=request.confirmed)
    return recovery_result_to_dict(result)
