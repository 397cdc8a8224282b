# appointments/routers/availability.py
"""
Availability API endpoints.

GET  /availability        - bookable slots of a provider for a date
POST /availability/check  - single-point check of one start time
"""

import asyncio
import logging
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session, sessionmaker

from ..database import get_db, get_session_factory
from ..deps import get_orchestrator, http_error
from ..errors import AppointmentsError, InvalidInput, NotFound
from ..models import Provider
from ..schemas.availability import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    AvailabilityResponse,
    SlotRead,
)
from ..services.slots import get_available_slots, is_available
from ..services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["availability"])


def _check_duration(db: Session, provider_id: str, duration: int) -> None:
    provider = db.get(Provider, provider_id)
    if provider is None or not provider.is_active:
        raise NotFound(f"Provider {provider_id} not found")
    if duration not in (provider.allowed_durations or []):
        raise InvalidInput(f"Duration {duration} is not offered by this provider")


def _resolve_slots(
    session_factory: sessionmaker,
    provider_id: str,
    target_date: date,
    duration: int,
    location_id: str | None,
) -> list[dict]:
    db = session_factory()
    try:
        _check_duration(db, provider_id, duration)
        return get_available_slots(db, provider_id, target_date, duration, location_id=location_id)
    finally:
        db.close()


@router.get("", response_model=AvailabilityResponse)
async def get_availability(
    provider_id: str,
    date: date,
    duration: int = Query(gt=0),
    location_id: str | None = None,
    session_factory: sessionmaker = Depends(get_session_factory),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Slots for one day.

    Busy-time is refreshed first with a fast-path sync of that day only;
    if it fails, slots come from the last cached data.
    """
    await orchestrator.sync_for_booking_lookup(provider_id, date)

    try:
        slots = await asyncio.to_thread(
            _resolve_slots, session_factory, provider_id, date, duration, location_id,
        )
    except AppointmentsError as e:
        raise http_error(e)

    return AvailabilityResponse(
        provider_id=provider_id,
        date=date,
        duration=duration,
        available_slots=[SlotRead(**slot) for slot in slots],
    )


@router.post("/check", response_model=AvailabilityCheckResponse)
def check_availability(
    data: AvailabilityCheckRequest,
    db: Session = Depends(get_db),
):
    try:
        _check_duration(db, data.provider_id, data.duration)
        available = is_available(
            db, data.provider_id, data.date, data.start_time, data.duration,
            location_id=data.location_id,
        )
    except AppointmentsError as e:
        raise http_error(e)
    return AvailabilityCheckResponse(is_available=available)
