"""
FastAPI REST API server for the conductor runtime.

Exposes runs, CRP/VCR checkpoints, missions and interrupted-run recovery
over HTTP. Route modules are thin: every operation is delegated to the
ConductorService.

Usage:
    # Run standalone
    python -m conductor.api.server

    # Or via factory
    from conductor.api import create_app
    app = create_app()
    uvicorn.run(app, port=5005)

API Structure:
    /api/runs/                  - Run control (from routes/runs.py)
    /api/runs/{id}/crps, vcrs   - Human checkpoints (from routes/crps.py)
    /api/missions/              - Missions (from routes/missions.py)
    /api/recovery/              - Interrupted runs (from routes/recovery.py)
    /api/health                 - Health check
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..runtime.errors import ConductorError, InvalidDecisionError
from ..runtime.service import ConductorService
from ..runtime.types import ErrorKind
from .routes import crps_router, missions_router, recovery_router, runs_router

logger = logging.getLogger(__name__)

# HTTP status per error kind; agent failure kinds never reach the API
# except through direct validation of user input.
ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PRECONDITION_FAILED: 409,
    ErrorKind.INVALID_DECISION: 422,
    ErrorKind.VALIDATION: 422,
    ErrorKind.CANCELLED: 409,
    ErrorKind.RETRY_EXHAUSTED: 500,
    ErrorKind.RUN_FAILED: 500,
    ErrorKind.NEEDS_HUMAN: 409,
}


class HealthResponse(BaseModel):
    status: str
    version: str
    state_dir: Optional[str] = None
    engine: Optional[str] = None


def error_response(error: ConductorError) -> JSONResponse:
    """Map a ConductorError onto the API's error envelope."""
    detail = {
        "error": error.kind.value,
        "message": error.message,
        "details": error.context,
    }
    if isinstance(error, InvalidDecisionError):
        detail["field"] = error.field
        detail["valid_values"] = error.valid_values
    return JSONResponse(status_code=ERROR_STATUS.get(error.kind, 500), content={"detail": detail})


def create_app(service: Optional[ConductorService] = None, enable_cors: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Service to serve. Defaults to the ConductorService
            singleton, created on first request.
        enable_cors: Whether to enable CORS middleware.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Conductor API",
        description="Runs, human checkpoints, missions and recovery for the four-agent pipeline.",
        version=__version__,
    )
    app.state.service = service

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(runs_router, prefix="/api")
    app.include_router(crps_router, prefix="/api")
    app.include_router(missions_router, prefix="/api")
    app.include_router(recovery_router, prefix="/api")

    @app.exception_handler(ConductorError)
    async def conductor_error_handler(request: Request, exc: ConductorError):
        if ERROR_STATUS.get(exc.kind, 500) >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return error_response(exc)

    # -------------------------------------------------------------------------
    # Request Logging Middleware
    # -------------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.info(
            "%s %s %s %.3fs",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        current: Optional[ConductorService] = request.app.state.service
        return HealthResponse(
            status="ok",
            version=__version__,
            state_dir=str(current.state_dir) if current is not None else None,
            engine=current.orchestrator.invoker.invoker_id if current is not None else None,
        )

    return app


# Create default app instance for uvicorn
app = create_app()


# =============================================================================
# Main Entry Point
# =============================================================================


def main():
    """Run the API server."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Conductor API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5005, help="Port to bind to")
    parser.add_argument("--no-cors", action="store_true", help="Disable CORS")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    global app
    app = create_app(enable_cors=not args.no_cors)

    print(f"Starting Conductor API server at http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
