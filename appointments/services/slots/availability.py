# appointments/services/slots/availability.py
"""
Availability resolver.

Open time comes from the effective template of the day. Busy time:
- cached calendar events of connections that allow bookings
  (events with allow_bookings=False are busy blocks; bookable events are
  busy only once their capacity is exhausted)
- active bookings not attached to a calendar event, padded by the
  provider's buffer

The resolver is duration-agnostic: checking a duration against the
provider's allowed_durations is the caller's job.
"""

from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...errors import InvalidInput, NotFound
from ...models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    CalendarConnection,
    CalendarEvent,
    Provider,
)
from ...timeutils import (
    as_utc,
    day_of_week,
    get_zone,
    local_day_bounds,
    minutes_to_time_str,
    time_str_to_minutes,
    utcnow,
)
from ..locations import is_location_active_on_date
from ..templates import get_effective_availability_for_date, get_effective_template_for_date
from .calculator import Interval, candidate_starts, covers, subtract_intervals
from .config import BookingConfig, get_booking_config


def local_time_to_utc(target_date: date, minutes: int, tz) -> datetime:
    """Provider-local wall clock (minutes since midnight) to a UTC instant."""
    naive = datetime.combine(target_date, time.min) + timedelta(minutes=minutes)
    return naive.replace(tzinfo=tz).astimezone(timezone.utc)


def _local_minutes(instant: datetime, target_date: date, tz) -> int:
    """Wall-clock minutes since the start of target_date; the following midnight is 24:00."""
    local = instant.astimezone(tz)
    return (local.date() - target_date).days * 24 * 60 + local.hour * 60 + local.minute


def get_available_slots(
    db: Session,
    provider_id: str,
    target_date: date,
    duration: int,
    config: BookingConfig | None = None,
    now: datetime | None = None,
    location_id: str | None = None,
) -> list[dict]:
    """
    Bookable slots for a provider on a date.

    Returns:
        List of {"start_time", "end_time", "day_of_week"} with provider-local
        "HH:MM" times, ordered by start.
    """
    if duration <= 0:
        raise InvalidInput(f"Duration must be positive, got {duration}")
    config = config or get_booking_config()
    now = now or utcnow()

    provider = _get_provider(db, provider_id)
    tz = get_zone(provider.timezone)
    if not _date_is_bookable(db, provider, target_date, tz, now, location_id):
        return []

    free = _free_intervals(db, provider, target_date, tz)
    length = timedelta(minutes=duration)
    starts = candidate_starts(free, length, timedelta(minutes=config.slot_step_minutes))

    weekday = day_of_week(target_date)
    return [
        {
            "start_time": minutes_to_time_str(_local_minutes(start, target_date, tz)),
            "end_time": minutes_to_time_str(_local_minutes(start + length, target_date, tz)),
            "day_of_week": weekday,
        }
        for start in starts
        # no slot may start in the past
        if start >= now
    ]


def is_available(
    db: Session,
    provider_id: str,
    target_date: date,
    start_time: str,
    duration: int,
    now: datetime | None = None,
    exclude_booking_id: str | None = None,
    location_id: str | None = None,
) -> bool:
    """Single-point check of [start_time, start_time + duration) on target_date."""
    if duration <= 0:
        raise InvalidInput(f"Duration must be positive, got {duration}")
    try:
        start_minutes = time_str_to_minutes(start_time)
    except ValueError as e:
        raise InvalidInput(str(e))
    now = now or utcnow()

    provider = _get_provider(db, provider_id)
    tz = get_zone(provider.timezone)
    if not _date_is_bookable(db, provider, target_date, tz, now, location_id):
        return False

    start = local_time_to_utc(target_date, start_minutes, tz)
    end = start + timedelta(minutes=duration)
    if start < now:
        return False

    free = _free_intervals(db, provider, target_date, tz, exclude_booking_id=exclude_booking_id)
    return covers(free, start, end)


# ── Internals ────────────────────────────────────────────────────────────


def _get_provider(db: Session, provider_id: str) -> Provider:
    provider = db.get(Provider, provider_id)
    if provider is None or not provider.is_active:
        raise NotFound(f"Provider {provider_id} not found")
    return provider


def _date_is_bookable(db: Session, provider: Provider, target_date: date, tz, now: datetime, location_id: str | None) -> bool:
    local_today = now.astimezone(tz).date()
    if target_date < local_today:
        return False
    if provider.advance_booking_days and target_date > local_today + timedelta(days=provider.advance_booking_days):
        return False
    if location_id and not is_location_active_on_date(db, provider.id, location_id, target_date):
        return False
    return True


def _free_intervals(
    db: Session,
    provider: Provider,
    target_date: date,
    tz,
    exclude_booking_id: str | None = None,
) -> list[Interval]:
    template = get_effective_template_for_date(db, provider.id, target_date)
    slots = get_effective_availability_for_date(db, template, target_date)
    if not slots:
        return []

    open_intervals = [
        (
            local_time_to_utc(target_date, time_str_to_minutes(slot.start_time), tz),
            local_time_to_utc(target_date, time_str_to_minutes(slot.end_time), tz),
        )
        for slot in slots
    ]

    day_start, day_end = local_day_bounds(target_date, tz)
    busy = _event_busy_intervals(db, provider.id, day_start, day_end)
    busy += _booking_busy_intervals(db, provider, day_start, day_end, exclude_booking_id)
    return subtract_intervals(open_intervals, busy)


def _event_busy_intervals(db: Session, provider_id: str, day_start: datetime, day_end: datetime) -> list[Interval]:
    rows = (
        db.query(CalendarEvent, CalendarConnection)
        .join(CalendarConnection, CalendarConnection.id == CalendarEvent.connection_id)
        .filter(
            CalendarEvent.provider_id == provider_id,
            CalendarConnection.provider_id == provider_id,
            CalendarConnection.allow_bookings.is_(True),
            CalendarEvent.start_time < day_end,
            CalendarEvent.end_time > day_start,
        )
        .all()
    )
    if not rows:
        return []

    bookable_ids = [event.id for event, _ in rows if event.allow_bookings]
    counts = _active_booking_counts(db, bookable_ids)

    busy: list[Interval] = []
    for event, connection in rows:
        if not connection.calendar_flag(event.calendar_id, "booking_enabled"):
            continue
        if event.allow_bookings and counts.get(event.id, 0) < (event.max_bookings or 1):
            # spare capacity: the event stays bookable
            continue
        busy.append((as_utc(event.start_time), as_utc(event.end_time)))
    return busy


def _active_booking_counts(db: Session, event_ids: list[str]) -> dict[str, int]:
    if not event_ids:
        return {}
    rows = (
        db.query(Booking.calendar_event_id, func.count(Booking.id))
        .filter(
            Booking.calendar_event_id.in_(event_ids),
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
        .group_by(Booking.calendar_event_id)
        .all()
    )
    counts = defaultdict(int)
    for event_id, count in rows:
        counts[event_id] = count
    return counts


def _booking_busy_intervals(
    db: Session,
    provider: Provider,
    day_start: datetime,
    day_end: datetime,
    exclude_booking_id: str | None,
) -> list[Interval]:
    buffer = timedelta(minutes=provider.buffer_minutes or 0)
    query = db.query(Booking).filter(
        Booking.provider_id == provider.id,
        Booking.calendar_event_id.is_(None),
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        # bookings are shorter than a day; the exact overlap is checked below
        Booking.scheduled_at < day_end + buffer,
        Booking.scheduled_at > day_start - buffer - timedelta(days=1),
    )
    if exclude_booking_id:
        query = query.filter(Booking.id != exclude_booking_id)

    busy: list[Interval] = []
    for booking in query.all():
        start = as_utc(booking.scheduled_at) - buffer
        end = as_utc(booking.scheduled_at) + timedelta(minutes=booking.duration) + buffer
        if start < day_end and end > day_start:
            busy.append((start, end))
    return busy
