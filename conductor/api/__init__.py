"""
Conductor API - FastAPI REST API over the ConductorService.

Endpoints:
    Runs (from routes/runs.py):
        POST   /api/runs                          - Start run (advanced in background)
        GET    /api/runs                          - List runs
        GET    /api/runs/{id}                     - Get run state
        POST   /api/runs/{id}/resume              - Resume after a VCR
        POST   /api/runs/{id}/stop                - Stop run
        POST   /api/runs/{id}/retry               - Retry failed phase
        POST   /api/runs/{id}/complete            - ready_for_merge -> completed
        GET    /api/runs/{id}/events              - Run journal

    Checkpoints (from routes/crps.py):
        GET    /api/runs/{id}/crps                - List CRPs
        GET    /api/runs/{id}/vcrs                - List VCRs
        POST   /api/runs/{id}/crps/{crp}/respond  - Submit VCR

    Missions (from routes/missions.py):
        GET    /api/missions                      - List missions
        POST   /api/missions                      - Create mission
        GET    /api/missions/{id}                 - Get mission
        POST   /api/missions/{id}/plan            - Submit plan
        POST   /api/missions/{id}/approve         - Approve plan
        POST   /api/missions/{id}/cancel          - Cancel mission
        POST   /api/missions/{id}/phases/{n}/run  - Run phase
        POST   /api/missions/{id}/tasks/{t}/run   - Run task
        POST   /api/missions/{id}/tasks/{t}/retry - Retry failed task
        POST   /api/missions/{id}/advance         - Run next phase

    Recovery (from routes/recovery.py):
        GET    /api/recovery                      - Detect interrupted runs
        POST   /api/recovery/{id}                 - Recover run

    Health:
        GET    /api/health                        - Health check
"""

from .routes import crps_router, missions_router, recovery_router, runs_router
from .server import app, create_app

__all__ = [
    "create_app",
    "app",
    "runs_router",
    "crps_router",
    "missions_router",
    "recovery_router",
]
