"""Shared helpers for the route modules."""

from __future__ import annotations

from fastapi import Request

from ...runtime.service import ConductorService


def get_service(request: Request) -> ConductorService:
    """The ConductorService bound to the app, or the process singleton."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        service = ConductorService.get_instance()
        request.app.state.service = service
    return service
