"""
appointments/services/booking_guard.py

Booking creation, reschedule and cancellation.

Capacity and availability are re-validated inside the same transaction that
inserts the booking, so two requests racing for the last seat cannot both
succeed:
- PostgreSQL: SELECT ... FOR UPDATE on the event (or provider) row
- SQLite: every transaction starts with BEGIN IMMEDIATE (see database.py)

Notifications are sent after commit and never fail the booking.
"""

import logging
from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import BookingsDisabled, EventNotFound, InvalidInput, NotFound, SlotUnavailable
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    CalendarEvent,
    Customer,
    Provider,
)
from ..schemas.bookings import BookingCreate, BookingReschedule
from ..timeutils import as_utc, get_zone, time_str_to_minutes, utcnow
from .events import emit_event
from .slots import is_available, local_time_to_utc

logger = logging.getLogger(__name__)


def create_booking(db: Session, data: BookingCreate, notify=emit_event, now=None) -> Booking:
    try:
        if data.calendar_event_id:
            booking = _book_event(db, data, now)
        else:
            booking = _book_template_slot(db, data, now)
        payload = _event_payload(db, booking)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Booking {booking.id} created for provider {booking.provider_id}")
    _notify(notify, "booking_created", payload)
    return booking


def _book_event(db: Session, data: BookingCreate, now=None) -> Booking:
    event = (
        db.query(CalendarEvent)
        .filter(CalendarEvent.id == data.calendar_event_id)
        .with_for_update()
        .first()
    )
    if event is None:
        raise EventNotFound(f"Calendar event {data.calendar_event_id} not found")
    if data.provider_id and event.provider_id != data.provider_id:
        raise EventNotFound(f"Calendar event {data.calendar_event_id} not found")
    if not event.allow_bookings:
        raise BookingsDisabled("Bookings are not allowed for this event")
    if as_utc(event.start_time) <= (now or utcnow()):
        raise SlotUnavailable("This appointment has already started")

    booked = (
        db.query(func.count(Booking.id))
        .filter(
            Booking.calendar_event_id == event.id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
        .scalar()
    )
    if booked >= (event.max_bookings or 1):
        raise SlotUnavailable("No spots left for this appointment")

    customer = _upsert_customer(db, data)
    start = as_utc(event.start_time)
    booking = Booking(
        customer_id=customer.id,
        provider_id=event.provider_id,
        calendar_event_id=event.id,
        scheduled_at=start,
        duration=int((as_utc(event.end_time) - start).total_seconds() // 60),
        status=BookingStatus.PENDING,
        service_type=data.service_type,
        notes=data.notes,
    )
    db.add(booking)
    db.flush()
    return booking


def _lock_provider(db: Session, provider_id: str) -> Provider:
    provider = (
        db.query(Provider)
        .filter(Provider.id == provider_id, Provider.is_active.is_(True))
        .with_for_update()
        .first()
    )
    if provider is None:
        raise NotFound(f"Provider {provider_id} not found")
    return provider


def _book_template_slot(db: Session, data: BookingCreate, now) -> Booking:
    provider = _lock_provider(db, data.provider_id)
    if data.duration not in (provider.allowed_durations or []):
        raise InvalidInput(f"Duration {data.duration} is not offered by this provider")

    if not is_available(
        db, provider.id, data.date, data.start_time, data.duration,
        now=now, location_id=data.location_id,
    ):
        raise SlotUnavailable("This time is no longer available")

    customer = _upsert_customer(db, data)
    booking = Booking(
        customer_id=customer.id,
        provider_id=provider.id,
        scheduled_at=local_time_to_utc(
            data.date, time_str_to_minutes(data.start_time), get_zone(provider.timezone),
        ),
        duration=data.duration,
        status=BookingStatus.PENDING,
        service_type=data.service_type,
        notes=data.notes,
    )
    db.add(booking)
    db.flush()
    return booking


def _upsert_customer(db: Session, data: BookingCreate) -> Customer:
    """Create-or-update by e-mail; empty fields never erase stored ones."""
    customer = db.query(Customer).filter(Customer.email == data.customer_email).first()
    if customer is None:
        customer = Customer(email=data.customer_email)
        db.add(customer)
    if data.customer_first_name:
        customer.first_name = data.customer_first_name
    if data.customer_last_name:
        customer.last_name = data.customer_last_name
    if data.customer_phone:
        customer.phone = data.customer_phone
    db.flush()
    return customer


def _get_booking(db: Session, provider_id: str, booking_id: str) -> Booking:
    booking = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.provider_id == provider_id)
        .with_for_update()
        .first()
    )
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found")
    return booking


def reschedule_booking(
    db: Session,
    booking_id: str,
    data: BookingReschedule,
    notify=emit_event,
    now=None,
) -> Booking:
    """
    Move a booking to a new template slot.

    The booking's own time is ignored while checking the new one. A booking
    moved away from a calendar event is detached from it.
    """
    try:
        provider = _lock_provider(db, data.provider_id)
        booking = _get_booking(db, provider.id, booking_id)
        if booking.status not in ACTIVE_BOOKING_STATUSES:
            raise InvalidInput(f"Booking {booking_id} is {booking.status.value} and cannot be rescheduled")

        duration = data.duration or booking.duration
        if data.duration and data.duration not in (provider.allowed_durations or []):
            raise InvalidInput(f"Duration {data.duration} is not offered by this provider")

        if not is_available(
            db, provider.id, data.date, data.start_time, duration,
            now=now, exclude_booking_id=booking.id,
        ):
            raise SlotUnavailable("This time is no longer available")

        previous = as_utc(booking.scheduled_at)
        booking.scheduled_at = local_time_to_utc(
            data.date, time_str_to_minutes(data.start_time), get_zone(provider.timezone),
        )
        booking.duration = duration
        booking.calendar_event_id = None
        booking.status = BookingStatus.RESCHEDULED
        db.flush()
        payload = _event_payload(db, booking)
        payload["previous_scheduled_at"] = previous.isoformat()
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Booking {booking.id} rescheduled from {previous.isoformat()}")
    _notify(notify, "booking_rescheduled", payload)
    return booking


def cancel_booking(
    db: Session,
    provider_id: str,
    booking_id: str,
    reason: str | None = None,
    notify=emit_event,
) -> Booking:
    try:
        booking = _get_booking(db, provider_id, booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise InvalidInput(f"Booking {booking_id} is already cancelled")
        booking.status = BookingStatus.CANCELLED
        if reason:
            booking.notes = f"{booking.notes}\n{reason}" if booking.notes else reason
        db.flush()
        payload = _event_payload(db, booking)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Booking {booking.id} cancelled")
    _notify(notify, "booking_cancelled", payload)
    return booking


def _event_payload(db: Session, booking: Booking) -> dict:
    customer = db.get(Customer, booking.customer_id)
    start = as_utc(booking.scheduled_at)
    return {
        "booking_id": booking.id,
        "provider_id": booking.provider_id,
        "customer_email": customer.email if customer else None,
        "scheduled_at": start.isoformat(),
        "ends_at": (start + timedelta(minutes=booking.duration)).isoformat(),
        "service_type": booking.service_type,
        "status": booking.status.value,
    }


def _notify(notify, event_type: str, payload: dict) -> None:
    try:
        notify(event_type, payload)
    except Exception:
        logger.exception(f"Notification {event_type} for booking {payload.get('booking_id')} failed")
