"""
Routes package for the Conductor API.

This package contains the FastAPI routers for:
- runs: Run control endpoints (start, resume, stop, retry, complete, events)
- crps: CRP/VCR listing and responding
- missions: Mission planning and execution
- recovery: Interrupted-run detection and recovery
"""

from .crps import router as crps_router
from .missions import router as missions_router
from .recovery import router as recovery_router
from .runs import router as runs_router

__all__ = [
    "runs_router",
    "crps_router",
    "missions_router",
    "recovery_router",
]
