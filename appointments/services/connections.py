"""
Calendar connection management.

- created from an adapter grant after the OAuth callback (or the Apple
  app-password form); reconnecting the same account reactivates the row
- disconnect releases remote resources, then deletes the row together with
  its cached events
- at most one connection per provider is the default for bookings
- per-connection settings choose which remote calendars are synced and
  which of them block or offer booking time
"""

import asyncio
import logging
from dataclasses import replace

from sqlalchemy.orm import Session, sessionmaker

from ..errors import AuthExpired, InvalidInput, NotFound
from ..models import CalendarConnection, CalendarEvent, Provider, SyncStatus
from .calendars import (
    AdapterRegistry,
    ConnectionCredentials,
    ConnectionGrant,
    RemoteCalendar,
    credentials_for,
    get_adapter,
)

logger = logging.getLogger(__name__)

CALENDAR_FLAGS = ("sync_enabled", "booking_enabled")

# Subscribed feeds nobody books against
READ_ONLY_CALENDAR_NAMES = (
    "holidays",
    "birthday",
    "contacts",
    "weather",
    "phases of the moon",
    "week numbers",
    "religious calendar",
    "sports calendar",
)

MAX_SYNC_FREQUENCY_MINUTES = 24 * 60


def get_connection(db: Session, provider_id: str, connection_id: str) -> CalendarConnection:
    connection = (
        db.query(CalendarConnection)
        .filter(CalendarConnection.id == connection_id, CalendarConnection.provider_id == provider_id)
        .populate_existing()
        .first()
    )
    if connection is None:
        raise NotFound(f"Calendar connection {connection_id} not found")
    return connection


def create_connection(db: Session, provider_id: str, grant: ConnectionGrant) -> CalendarConnection:
    if db.get(Provider, provider_id) is None:
        raise NotFound(f"Provider {provider_id} not found")

    connection = (
        db.query(CalendarConnection)
        .filter(
            CalendarConnection.provider_id == provider_id,
            CalendarConnection.platform == grant.platform,
            CalendarConnection.account_email == grant.account_email,
        )
        .first()
    )
    if connection is None:
        connection = CalendarConnection(
            provider_id=provider_id,
            platform=grant.platform,
            account_email=grant.account_email,
        )
        db.add(connection)
        has_default = (
            db.query(CalendarConnection.id)
            .filter(
                CalendarConnection.provider_id == provider_id,
                CalendarConnection.is_default_for_bookings.is_(True),
            )
            .first()
        )
        connection.is_default_for_bookings = has_default is None

    connection.access_token = grant.access_token
    if grant.refresh_token:
        connection.refresh_token = grant.refresh_token
    connection.token_expiry = grant.expires_at
    connection.calendar_id = grant.calendar_id
    connection.calendar_name = grant.calendar_name
    connection.selected_calendars = list(grant.calendars)
    connection.is_active = True
    connection.reauth_required = False
    connection.sync_status = SyncStatus.IDLE
    connection.last_sync_error = None

    db.commit()
    db.refresh(connection)
    logger.info(f"{grant.platform.value} connection {connection.id} saved for provider {provider_id}")
    return connection


def _load_connection(
    session_factory: sessionmaker,
    provider_id: str,
    connection_id: str,
) -> tuple[CalendarConnection, ConnectionCredentials]:
    db = session_factory()
    try:
        connection = get_connection(db, provider_id, connection_id)
        provider = db.get(Provider, provider_id)
        return connection, credentials_for(connection, provider.timezone)
    finally:
        db.close()


def _delete_connection(session_factory: sessionmaker, provider_id: str, connection_id: str) -> None:
    db = session_factory()
    try:
        connection = get_connection(db, provider_id, connection_id)
        was_default = connection.is_default_for_bookings
        db.delete(connection)
        db.flush()
        if was_default:
            successor = (
                db.query(CalendarConnection)
                .filter(
                    CalendarConnection.provider_id == provider_id,
                    CalendarConnection.is_active.is_(True),
                )
                .order_by(CalendarConnection.created_at)
                .first()
            )
            if successor is not None:
                successor.is_default_for_bookings = True
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def disconnect_connection(
    session_factory: sessionmaker,
    adapters: AdapterRegistry,
    provider_id: str,
    connection_id: str,
) -> None:
    _, credentials = await asyncio.to_thread(_load_connection, session_factory, provider_id, connection_id)

    adapter = get_adapter(adapters, credentials.platform)
    await adapter.disconnect(credentials)

    await asyncio.to_thread(_delete_connection, session_factory, provider_id, connection_id)
    logger.info(f"Connection {connection_id} disconnected for provider {provider_id}")


def set_default_connection(db: Session, provider_id: str, connection_id: str) -> CalendarConnection:
    connection = get_connection(db, provider_id, connection_id)
    if not connection.is_active:
        raise InvalidInput("An inactive connection cannot be the default for bookings")

    db.query(CalendarConnection).filter(
        CalendarConnection.provider_id == provider_id,
        CalendarConnection.id != connection_id,
    ).update({CalendarConnection.is_default_for_bookings: False}, synchronize_session="fetch")
    connection.is_default_for_bookings = True
    db.commit()
    return connection


# ── Remote calendars and settings ────────────────────────────────────────


def is_bookable_calendar(calendar: RemoteCalendar) -> bool:
    """Writable calendars that are not holiday, birthday or similar feeds."""
    if not calendar.can_write:
        return False
    name = calendar.name.lower()
    return not any(pattern in name for pattern in READ_ONLY_CALENDAR_NAMES)


async def list_available_calendars(
    session_factory: sessionmaker,
    adapters: AdapterRegistry,
    tokens,
    provider_id: str,
    connection_id: str,
) -> list[dict]:
    """
    Remote calendars the provider can add to a connection, with the
    connection's current selection and flags.

    The platform's primary calendar is reported under the connection's
    calendar_id so selections and settings use the ids sync uses.
    """
    connection, credentials = await asyncio.to_thread(
        _load_connection, session_factory, provider_id, connection_id,
    )
    adapter = get_adapter(adapters, connection.platform)

    access_token = await tokens.ensure_valid_token(connection_id)
    try:
        calendars = await adapter.list_calendars(replace(credentials, access_token=access_token))
    except AuthExpired:
        logger.info(f"Calendar list for connection {connection_id} got 401, refreshing token")
        access_token = await tokens.force_refresh(connection_id, access_token)
        calendars = await adapter.list_calendars(replace(credentials, access_token=access_token))

    covered = connection.calendar_ids()
    available = []
    for calendar in calendars:
        if not calendar.is_primary and not is_bookable_calendar(calendar):
            continue
        calendar_id = connection.calendar_id if calendar.is_primary else calendar.id
        available.append({
            "id": calendar_id,
            "name": calendar.name,
            "is_primary": calendar.is_primary,
            "can_write": calendar.can_write,
            "selected": calendar_id in covered,
            "sync_enabled": connection.calendar_flag(calendar_id, "sync_enabled"),
            "booking_enabled": connection.calendar_flag(calendar_id, "booking_enabled"),
        })
    return available


def update_connection_settings(
    db: Session,
    provider_id: str,
    connection_id: str,
    selected_calendars: list[str] | None = None,
    calendar_settings: dict[str, dict[str, bool]] | None = None,
    sync_frequency: int | None = None,
    sync_events: bool | None = None,
    allow_bookings: bool | None = None,
) -> CalendarConnection:
    """
    Partial update of a connection's sync and booking settings.

    Calendars dropped from the selection lose their flags and their cached
    events; the primary calendar is always covered.
    """
    try:
        connection = get_connection(db, provider_id, connection_id)

        if selected_calendars is not None:
            selection = []
            for calendar_id in selected_calendars:
                if not calendar_id:
                    raise InvalidInput("Calendar ids must not be empty")
                if calendar_id != connection.calendar_id and calendar_id not in selection:
                    selection.append(calendar_id)
            dropped = set(connection.calendar_ids()) - set(selection) - {connection.calendar_id}
            connection.selected_calendars = selection
            if dropped:
                _drop_calendars(db, connection, dropped)

        if calendar_settings is not None:
            covered = connection.calendar_ids()
            merged = {
                calendar_id: dict(flags)
                for calendar_id, flags in (connection.calendar_settings or {}).items()
                if calendar_id in covered
            }
            for calendar_id, flags in calendar_settings.items():
                if calendar_id not in covered:
                    raise InvalidInput(f"Calendar {calendar_id} is not part of this connection")
                unknown = set(flags) - set(CALENDAR_FLAGS)
                if unknown:
                    raise InvalidInput(f"Unknown calendar setting(s): {', '.join(sorted(unknown))}")
                merged.setdefault(calendar_id, {}).update({k: bool(v) for k, v in flags.items()})
            connection.calendar_settings = merged

        if sync_frequency is not None:
            if not 1 <= sync_frequency <= MAX_SYNC_FREQUENCY_MINUTES:
                raise InvalidInput(f"sync_frequency must be between 1 and {MAX_SYNC_FREQUENCY_MINUTES} minutes")
            connection.sync_frequency = sync_frequency
        if sync_events is not None:
            connection.sync_events = sync_events
        if allow_bookings is not None:
            connection.allow_bookings = allow_bookings

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Settings updated for connection {connection_id}")
    return connection


def _drop_calendars(db: Session, connection: CalendarConnection, dropped: set[str]) -> None:
    connection.calendar_settings = {
        calendar_id: flags
        for calendar_id, flags in (connection.calendar_settings or {}).items()
        if calendar_id not in dropped
    }
    rows = (
        db.query(CalendarEvent)
        .filter(
            CalendarEvent.connection_id == connection.id,
            CalendarEvent.calendar_id.in_(list(dropped)),
        )
        .all()
    )
    for row in rows:
        db.delete(row)
    logger.info(f"Connection {connection.id}: dropped {len(dropped)} calendar(s), {len(rows)} cached event(s)")


def update_event_booking_policy(
    db: Session,
    provider_id: str,
    event_id: str,
    allow_bookings: bool | None = None,
    max_bookings: int | None = None,
) -> CalendarEvent:
    """Booking policy is local to the cache; resyncs never overwrite it."""
    event = (
        db.query(CalendarEvent)
        .filter(CalendarEvent.id == event_id, CalendarEvent.provider_id == provider_id)
        .first()
    )
    if event is None:
        raise NotFound(f"Calendar event {event_id} not found")
    if max_bookings is not None:
        if max_bookings < 1:
            raise InvalidInput("max_bookings must be at least 1")
        event.max_bookings = max_bookings
    if allow_bookings is not None:
        event.allow_bookings = allow_bookings
    db.commit()
    return event
