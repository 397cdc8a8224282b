# appointments/routers/calendar.py
"""
Calendar sync and connection endpoints.

Sync requests never fail because a remote platform did: per-connection and
per-calendar failures are reported inside `results`.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from ..database import get_db, get_session_factory
from ..deps import get_adapters, get_orchestrator, get_token_manager, http_error
from ..errors import AppointmentsError
from ..models import CalendarConnection, Platform, SyncStatus
from ..schemas.calendar import (
    AuthorizationUrlResponse,
    AvailableCalendarsResponse,
    CalendarEventRead,
    ConnectionSettingsUpdate,
    EventPolicyUpdate,
    SyncRequest,
    SyncResponse,
    TokenRefreshResponse,
)
from ..services.calendars import AdapterRegistry, ConnectionGrant, get_adapter
from ..services.connections import (
    create_connection,
    disconnect_connection,
    get_connection,
    list_available_calendars,
    set_default_connection,
    update_connection_settings,
    update_event_booking_policy,
)
from ..services.sync import SyncOrchestrator
from ..services.tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar"])


class ConnectRequest(BaseModel):
    provider_id: str
    # OAuth code, or the app-specific password for Apple
    auth_code: str
    # Apple ID (Apple only)
    account: str | None = None


class ConnectionRead(BaseModel):
    id: str
    provider_id: str
    platform: Platform
    account_email: str
    calendar_id: str
    calendar_name: str | None = None
    selected_calendars: list[str] = []
    calendar_settings: dict[str, dict[str, bool]] = {}
    sync_events: bool
    sync_frequency: int
    allow_bookings: bool
    is_default_for_bookings: bool
    is_active: bool
    reauth_required: bool
    sync_status: SyncStatus

    model_config = {"from_attributes": True}


@router.post("/sync", response_model=SyncResponse)
async def sync_calendars(
    data: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        if data.connection_id:
            result = await orchestrator.sync_connection(data.connection_id)
            return {"success": result.success, "results": [result.to_dict()]}

        summary = await orchestrator.sync_all_calendars(data.provider_id)
    except AppointmentsError as e:
        raise http_error(e)
    return {"success": summary["success"], "results": summary["results"]}


@router.post("/cron/sync", response_model=SyncResponse)
async def cron_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    results = await orchestrator.sync_due_connections()
    return {
        "success": all(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }


@router.post("/cron/token-refresh", response_model=TokenRefreshResponse)
async def cron_token_refresh(token_manager: TokenLifecycleManager = Depends(get_token_manager)):
    results = await token_manager.refresh_expiring_tokens()
    return {
        "success": all(r["success"] for r in results),
        "results": results,
    }


@router.patch("/events/{event_id}", response_model=CalendarEventRead)
def update_event_policy(
    event_id: str,
    data: EventPolicyUpdate,
    db: Session = Depends(get_db),
):
    try:
        return update_event_booking_policy(
            db, data.provider_id, event_id,
            allow_bookings=data.allow_bookings,
            max_bookings=data.max_bookings,
        )
    except AppointmentsError as e:
        raise http_error(e)


# ── Connections ──────────────────────────────────────────────────────────




def _save_connection(session_factory: sessionmaker, provider_id: str, grant: ConnectionGrant) -> CalendarConnection:
    db = session_factory()
    try:
        return create_connection(db, provider_id, grant)
    finally:
        db.close()


def _fetch_connection(session_factory: sessionmaker, provider_id: str, connection_id: str) -> CalendarConnection:
    db = session_factory()
    try:
        return get_connection(db, provider_id, connection_id)
    finally:
        db.close()


@router.get("/connect/google/authorize", response_model=AuthorizationUrlResponse)
def google_authorization_url(
    provider_id: str,
    adapters: AdapterRegistry = Depends(get_adapters),
):
    """Consent URL for Google; the provider id travels back in `state`."""
    adapter = get_adapter(adapters, Platform.GOOGLE)
    return {"authorization_url": adapter.get_oauth_url(state=provider_id)}


@router.post(
    "/connect/{platform}",
    response_model=ConnectionRead,
    status_code=status.HTTP_201_CREATED,
)
async def connect_calendar(
    platform: Platform,
    data: ConnectRequest,
    session_factory: sessionmaker = Depends(get_session_factory),
    adapters: AdapterRegistry = Depends(get_adapters),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        grant = await get_adapter(adapters, platform).connect(data.auth_code, account=data.account)
        connection = await asyncio.to_thread(_save_connection, session_factory, data.provider_id, grant)
    except AppointmentsError as e:
        raise http_error(e)

    # Initial fill of the cache; failures are visible on the connection
    await orchestrator.backfill_connection(connection.id)
    return await asyncio.to_thread(_fetch_connection, session_factory, data.provider_id, connection.id)


@router.post("/connections/{connection_id}/backfill", response_model=SyncResponse)
async def backfill(
    connection_id: str,
    provider_id: str,
    session_factory: sessionmaker = Depends(get_session_factory),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        await asyncio.to_thread(_fetch_connection, session_factory, provider_id, connection_id)
        results = await orchestrator.backfill_connection(connection_id)
    except AppointmentsError as e:
        raise http_error(e)
    return {
        "success": all(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }


@router.get("/connections/{connection_id}/calendars", response_model=AvailableCalendarsResponse)
async def available_calendars(
    connection_id: str,
    provider_id: str,
    session_factory: sessionmaker = Depends(get_session_factory),
    adapters: AdapterRegistry = Depends(get_adapters),
    token_manager: TokenLifecycleManager = Depends(get_token_manager),
):
    """Remote calendars that can be added to the connection."""
    try:
        calendars = await list_available_calendars(
            session_factory, adapters, token_manager, provider_id, connection_id,
        )
    except AppointmentsError as e:
        raise http_error(e)
    return {"connection_id": connection_id, "calendars": calendars}


@router.patch("/connections/{connection_id}/settings", response_model=ConnectionRead)
def update_settings(
    connection_id: str,
    data: ConnectionSettingsUpdate,
    db: Session = Depends(get_db),
):
    calendar_settings = None
    if data.calendar_settings is not None:
        calendar_settings = {
            calendar_id: flags.model_dump(exclude_none=True)
            for calendar_id, flags in data.calendar_settings.items()
        }
    try:
        return update_connection_settings(
            db, data.provider_id, connection_id,
            selected_calendars=data.selected_calendars,
            calendar_settings=calendar_settings,
            sync_frequency=data.sync_frequency,
            sync_events=data.sync_events,
            allow_bookings=data.allow_bookings,
        )
    except AppointmentsError as e:
        raise http_error(e)


@router.post("/connections/{connection_id}/default", response_model=ConnectionRead)
def make_default(
    connection_id: str,
    provider_id: str,
    db: Session = Depends(get_db),
):
    try:
        return set_default_connection(db, provider_id, connection_id)
    except AppointmentsError as e:
        raise http_error(e)


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    connection_id: str,
    provider_id: str,
    session_factory: sessionmaker = Depends(get_session_factory),
    adapters: AdapterRegistry = Depends(get_adapters),
):
    try:
        await disconnect_connection(session_factory, adapters, provider_id, connection_id)
    except AppointmentsError as e:
        raise http_error(e)
