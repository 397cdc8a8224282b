# appointments/deps.py
"""
FastAPI dependencies for the long-lived collaborators kept on app.state.

Tests override these with app.dependency_overrides.
"""

from fastapi import HTTPException, Request

from .errors import AppointmentsError
from .services.calendars import AdapterRegistry
from .services.events import emit_event
from .services.sync import SyncOrchestrator
from .services.tokens import TokenLifecycleManager


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_token_manager(request: Request) -> TokenLifecycleManager:
    return request.app.state.token_manager


def get_adapters(request: Request) -> AdapterRegistry:
    return request.app.state.adapters


def get_notifier():
    return emit_event


def http_error(e: AppointmentsError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())
