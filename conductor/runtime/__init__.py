# conductor/runtime package
# Orchestration engine for the refiner -> builder -> verifier -> gatekeeper pipeline.
#
# Core components:
#   - types: Core dataclasses (RunState, CRP, VCR, Mission, events)
#   - storage: Disk I/O for run state, CRPs/VCRs, missions and the run journal
#   - retry: RetryExecutor with exponential backoff
#   - protocol: CRP/VCR human checkpoint protocol
#   - orchestrator: Run phase state machine
#   - recovery: Interrupted-run detection and resume strategies
#   - missions: Mission/phase/task execution engine
#   - service: ConductorService singleton wiring everything from config
#
# Usage:
#     from conductor.runtime import ConductorService
#     service = ConductorService.get_instance()
#     state = service.orchestrator.start_run("Add retry to the HTTP client")

from typing import TYPE_CHECKING

from .errors import (
    ConductorError,
    InvalidDecisionError,
    NotFoundError,
    PreconditionFailedError,
    RetryExhaustedError,
)
from .storage import get_run_path, list_runs, run_exists
from .types import (
    CRP,
    VCR,
    Mission,
    Phase,
    RunId,
    RunState,
    generate_run_id,
)

# TYPE_CHECKING stubs for static type checkers; the service is imported
# lazily at runtime to avoid circular dependencies with config
if TYPE_CHECKING:
    from .service import ConductorService as ConductorService
    from .service import get_conductor_service as get_conductor_service

__all__ = [
    # Types
    "RunId",
    "Phase",
    "RunState",
    "CRP",
    "VCR",
    "Mission",
    "generate_run_id",
    # Errors
    "ConductorError",
    "NotFoundError",
    "PreconditionFailedError",
    "InvalidDecisionError",
    "RetryExhaustedError",
    # Storage
    "get_run_path",
    "run_exists",
    "list_runs",
    # Service (imported lazily at runtime, statically available for type checking)
    "ConductorService",
    "get_conductor_service",
]


def __getattr__(name: str):
    """Lazy import for service to avoid circular dependencies."""
    if name == "ConductorService":
        from .service import ConductorService

        return ConductorService
    if name == "get_conductor_service":
        from .service import get_conductor_service

        return get_conductor_service
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
