from datetime import date, datetime, timedelta, timezone

import pytest

from appointments.errors import InvalidInput, NotFound
from appointments.models import Booking, BookingStatus, Customer, LocationSchedule, ProviderLocation
from appointments.services.slots import BookingConfig, get_available_slots, is_available, local_time_to_utc
from appointments.services.slots.calculator import candidate_starts, merge_intervals, subtract_intervals
from appointments.timeutils import get_zone

from .conftest import NOW

MONDAY = date(2026, 3, 2)


def _utc(hour, minute=0, day=MONDAY):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _starts(slots):
    return [slot["start_time"] for slot in slots]


def _book(db, provider, start, duration, event=None, status=BookingStatus.CONFIRMED):
    customer = db.query(Customer).filter_by(email="client@example.com").first()
    if customer is None:
        customer = Customer(email="client@example.com")
        db.add(customer)
        db.flush()
    booking = Booking(
        customer_id=customer.id,
        provider_id=provider.id,
        calendar_event_id=event.id if event else None,
        scheduled_at=start,
        duration=duration,
        status=status,
        service_type="consultation",
    )
    db.add(booking)
    db.commit()
    return booking


# ── Interval arithmetic ──────────────────────────────────────────────────


def test_merge_and_subtract_intervals():
    merged = merge_intervals([(_utc(10), _utc(11)), (_utc(9), _utc(10)), (_utc(13), _utc(14))])
    assert merged == [(_utc(9), _utc(11)), (_utc(13), _utc(14))]

    free = subtract_intervals([(_utc(8), _utc(17))], [(_utc(10), _utc(11)), (_utc(16), _utc(18))])
    assert free == [(_utc(8), _utc(10)), (_utc(11), _utc(16))]


def test_candidate_starts_are_aligned_to_free_interval_start():
    starts = candidate_starts([(_utc(9, 10), _utc(10, 10))], timedelta(minutes=30), timedelta(minutes=15))
    assert starts == [_utc(9, 10), _utc(9, 25), _utc(9, 40)]


def test_booking_config_rejects_unknown_step():
    with pytest.raises(ValueError):
        BookingConfig(slot_step_minutes=20)


# ── Resolver ─────────────────────────────────────────────────────────────


def test_open_day_without_busy_time(db, make_provider, make_template):
    provider = make_provider()
    make_template(provider)

    slots = get_available_slots(db, provider.id, MONDAY, 60, now=NOW)

    assert slots[0] == {"start_time": "08:00", "end_time": "09:00", "day_of_week": 1}
    assert slots[-1]["start_time"] == "16:00"
    assert len(slots) == 33


def test_busy_event_removes_overlapping_slots(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    make_template(provider)
    connection = make_connection(provider)
    make_event(connection, _utc(10), _utc(11))

    starts = _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))

    assert "09:00" in starts
    assert "09:15" not in starts
    assert "10:00" not in starts
    assert "10:45" not in starts
    assert "11:00" in starts


def test_no_slot_starts_in_the_past(db, make_provider, make_template):
    provider = make_provider()
    make_template(provider)

    slots = get_available_slots(db, provider.id, MONDAY, 30, now=_utc(10, 7))

    assert slots[0]["start_time"] == "10:15"


def test_past_date_and_advance_window_are_closed(db, make_provider, make_template):
    provider = make_provider(advance_booking_days=7)
    make_template(provider)

    assert get_available_slots(db, provider.id, MONDAY - timedelta(days=1), 30, now=NOW) == []
    assert get_available_slots(db, provider.id, MONDAY + timedelta(days=8), 30, now=NOW) == []
    assert get_available_slots(db, provider.id, MONDAY + timedelta(days=7), 30, now=NOW) != []


def test_bookable_event_blocks_only_when_full(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    make_template(provider)
    connection = make_connection(provider)
    event = make_event(connection, _utc(12), _utc(13), allow_bookings=True, max_bookings=2)

    _book(db, provider, _utc(12), 60, event=event)
    assert "12:00" in _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))

    _book(db, provider, _utc(12), 60, event=event)
    assert "12:00" not in _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))


def test_cancelled_booking_frees_capacity(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    make_template(provider)
    connection = make_connection(provider)
    event = make_event(connection, _utc(12), _utc(13), allow_bookings=True, max_bookings=1)
    _book(db, provider, _utc(12), 60, event=event, status=BookingStatus.CANCELLED)

    assert "12:00" in _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))


def test_template_booking_is_padded_by_buffer(db, make_provider, make_template):
    provider = make_provider(buffer_minutes=15)
    make_template(provider)
    _book(db, provider, _utc(10), 60)

    starts = _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))

    assert "08:45" in starts
    assert "09:00" not in starts
    assert "11:00" not in starts
    assert "11:15" in starts


def test_connection_not_used_for_bookings_is_ignored(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    make_template(provider)
    personal = make_connection(provider, allow_bookings=False)
    make_event(personal, _utc(10), _utc(11))

    assert "10:00" in _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))


def test_calendar_with_bookings_disabled_is_ignored(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    make_template(provider)
    connection = make_connection(
        provider,
        selected_calendars=["family"],
        calendar_settings={"family": {"booking_enabled": False}},
    )
    make_event(connection, _utc(10), _utc(11), calendar_id="family")
    make_event(connection, _utc(14), _utc(15))

    starts = _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))
    assert "10:00" in starts
    assert "14:00" not in starts


def test_other_providers_events_do_not_leak(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    other = make_provider()
    make_template(provider)
    make_event(make_connection(other), _utc(10), _utc(11))

    assert "10:00" in _starts(get_available_slots(db, provider.id, MONDAY, 60, now=NOW))


def test_times_are_provider_local(db, make_provider, make_template):
    provider = make_provider(timezone="America/New_York")
    make_template(provider, slots=[(1, "09:00", "10:00")])

    slots = get_available_slots(db, provider.id, MONDAY, 30, now=NOW)

    assert _starts(slots) == ["09:00", "09:15", "09:30"]
    assert local_time_to_utc(MONDAY, 9 * 60, get_zone("America/New_York")) == _utc(14)


def test_slot_ending_at_midnight_ends_at_24_00(db, make_provider, make_template):
    provider = make_provider(timezone="America/New_York")
    make_template(provider, slots=[(1, "22:30", "24:00")])

    slots = get_available_slots(db, provider.id, MONDAY, 60, now=NOW)

    assert slots == [
        {"start_time": "22:30", "end_time": "23:30", "day_of_week": 1},
        {"start_time": "22:45", "end_time": "23:45", "day_of_week": 1},
        {"start_time": "23:00", "end_time": "24:00", "day_of_week": 1},
    ]


def test_closed_day_has_no_slots(db, make_provider, make_template):
    provider = make_provider()
    make_template(provider, slots=[(2, "08:00", "17:00")])

    assert get_available_slots(db, provider.id, MONDAY, 30, now=NOW) == []


def test_location_schedule_limits_dates(db, make_provider, make_template):
    provider = make_provider()
    make_template(provider)
    location = ProviderLocation(provider_id=provider.id, city="Austin", state_province="TX", country="US")
    db.add(location)
    db.flush()
    db.add(LocationSchedule(location_id=location.id, start_date=MONDAY + timedelta(days=1)))
    db.commit()

    assert get_available_slots(db, provider.id, MONDAY, 30, now=NOW, location_id=location.id) == []
    assert get_available_slots(
        db, provider.id, MONDAY + timedelta(days=1), 30, now=NOW, location_id=location.id,
    ) != []


def test_invalid_duration_and_unknown_provider(db, make_provider):
    provider = make_provider()

    with pytest.raises(InvalidInput):
        get_available_slots(db, provider.id, MONDAY, 0, now=NOW)
    with pytest.raises(NotFound):
        get_available_slots(db, "missing", MONDAY, 30, now=NOW)


# ── Single-point check ───────────────────────────────────────────────────


def test_is_available(db, make_provider, make_template, make_connection, make_event):
    provider = make_provider()
    make_template(provider)
    make_event(make_connection(provider), _utc(10), _utc(11))

    assert is_available(db, provider.id, MONDAY, "08:00", 60, now=NOW)
    assert not is_available(db, provider.id, MONDAY, "09:30", 60, now=NOW)
    assert not is_available(db, provider.id, MONDAY, "16:30", 60, now=NOW)
    assert not is_available(db, provider.id, MONDAY, "07:30", 30, now=NOW)
    # already started
    assert not is_available(db, provider.id, MONDAY, "08:00", 30, now=_utc(8, 5))

    with pytest.raises(InvalidInput):
        is_available(db, provider.id, MONDAY, "8 o'clock", 30, now=NOW)


def test_is_available_can_ignore_one_booking(db, make_provider, make_template):
    provider = make_provider()
    make_template(provider)
    booking = _book(db, provider, _utc(10), 60)

    assert not is_available(db, provider.id, MONDAY, "10:30", 60, now=NOW)
    assert is_available(db, provider.id, MONDAY, "10:30", 60, now=NOW, exclude_booking_id=booking.id)
