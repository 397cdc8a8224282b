from datetime import date, datetime, timezone

import pytest

from appointments.errors import InvalidInput, NotFound
from appointments.models import AvailabilityTemplate, TemplateAssignment, TimeSlot
from appointments.services.templates import (
    create_assignment,
    create_template,
    get_effective_availability_for_date,
    get_effective_template_for_date,
    replace_time_slots,
    set_default_template,
)


def _assign(db, provider, template, start, end=None, created_at=None):
    assignment = TemplateAssignment(
        provider_id=provider.id,
        template_id=template.id,
        start_date=start,
        end_date=end,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(assignment)
    db.commit()
    return assignment


def test_default_template_used_without_assignments(db, make_provider, make_template):
    provider = make_provider()
    default = make_template(provider)

    assert get_effective_template_for_date(db, provider.id, date(2026, 3, 2)).id == default.id


def test_no_template_means_closed(db, make_provider):
    provider = make_provider()

    template = get_effective_template_for_date(db, provider.id, date(2026, 3, 2))
    assert template is None
    assert get_effective_availability_for_date(db, template, date(2026, 3, 2)) == []


def test_assignment_overrides_default_inside_its_range(db, make_provider, make_template):
    provider = make_provider()
    default = make_template(provider, name="Default")
    summer = make_template(provider, is_default=False, name="Summer")
    _assign(db, provider, summer, date(2026, 6, 1), date(2026, 8, 31))

    assert get_effective_template_for_date(db, provider.id, date(2026, 7, 15)).id == summer.id
    assert get_effective_template_for_date(db, provider.id, date(2026, 8, 31)).id == summer.id
    assert get_effective_template_for_date(db, provider.id, date(2026, 9, 1)).id == default.id


def test_open_ended_assignment(db, make_provider, make_template):
    provider = make_provider()
    make_template(provider)
    later = make_template(provider, is_default=False, name="From April")
    _assign(db, provider, later, date(2026, 4, 1))

    assert get_effective_template_for_date(db, provider.id, date(2030, 1, 1)).id == later.id


def test_most_recently_created_assignment_wins(db, make_provider, make_template):
    provider = make_provider()
    first = make_template(provider, is_default=False, name="First")
    second = make_template(provider, is_default=False, name="Second")
    _assign(db, provider, second, date(2026, 3, 1), date(2026, 3, 31),
            created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))
    _assign(db, provider, first, date(2026, 3, 10), date(2026, 3, 20),
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))

    # "second" was created later, so it governs the overlap too
    assert get_effective_template_for_date(db, provider.id, date(2026, 3, 15)).id == second.id


def test_inactive_assigned_template_is_ignored(db, make_provider, make_template):
    provider = make_provider()
    default = make_template(provider)
    retired = make_template(provider, is_default=False, is_active=False, name="Retired")
    _assign(db, provider, retired, date(2026, 3, 1), date(2026, 3, 31))

    assert get_effective_template_for_date(db, provider.id, date(2026, 3, 15)).id == default.id


def test_slots_filtered_by_weekday_and_enabled(db, make_provider, make_template):
    provider = make_provider()
    template = make_template(provider, slots=[
        (1, "13:00", "17:00"),
        (1, "08:00", "12:00"),
        (2, "08:00", "12:00"),
    ])
    db.add(TimeSlot(template_id=template.id, day_of_week=1, start_time="18:00", end_time="20:00", is_enabled=False))
    db.commit()

    monday = date(2026, 3, 2)
    slots = get_effective_availability_for_date(db, template.id, monday)
    assert [(s.start_time, s.end_time) for s in slots] == [("08:00", "12:00"), ("13:00", "17:00")]

    sunday = date(2026, 3, 1)
    assert get_effective_availability_for_date(db, template, sunday) == []


def test_create_template_validates_slots(db, make_provider):
    provider = make_provider()

    with pytest.raises(InvalidInput):
        create_template(db, provider.id, "Bad", [{"day_of_week": 7, "start_time": "08:00", "end_time": "09:00"}])
    with pytest.raises(InvalidInput):
        create_template(db, provider.id, "Bad", [{"day_of_week": 1, "start_time": "10:00", "end_time": "09:00"}])
    with pytest.raises(InvalidInput):
        create_template(db, provider.id, "Bad", [{"day_of_week": 1, "start_time": "9am", "end_time": "10:00"}])
    with pytest.raises(NotFound):
        create_template(db, "missing", "Nope", [])


def test_single_default_per_provider(db, make_provider):
    provider = make_provider()
    slots = [{"day_of_week": 1, "start_time": "08:00", "end_time": "12:00"}]
    first = create_template(db, provider.id, "First", slots, is_default=True)
    second = create_template(db, provider.id, "Second", slots, is_default=True)

    defaults = db.query(AvailabilityTemplate).filter_by(provider_id=provider.id, is_default=True).all()
    assert [t.id for t in defaults] == [second.id]

    set_default_template(db, provider.id, first.id)
    db.expire_all()
    defaults = db.query(AvailabilityTemplate).filter_by(provider_id=provider.id, is_default=True).all()
    assert [t.id for t in defaults] == [first.id]
    assert get_effective_template_for_date(db, provider.id, date(2026, 3, 2)).id == first.id


def test_replace_time_slots_replaces_whole_set(db, make_provider):
    provider = make_provider()
    template = create_template(db, provider.id, "Week", [
        {"day_of_week": 1, "start_time": "08:00", "end_time": "12:00"},
        {"day_of_week": 2, "start_time": "08:00", "end_time": "12:00"},
    ])

    replace_time_slots(db, provider.id, template.id, [
        {"day_of_week": 3, "start_time": "10:00", "end_time": "11:00"},
    ])

    assert [(s.day_of_week, s.start_time) for s in template.time_slots] == [(3, "10:00")]


def test_assignment_end_before_start_rejected(db, make_provider, make_template):
    provider = make_provider()
    template = make_template(provider)

    with pytest.raises(InvalidInput):
        create_assignment(db, provider.id, template.id, date(2026, 3, 10), date(2026, 3, 1))

    assignment = create_assignment(db, provider.id, template.id, date(2026, 3, 10))
    assert assignment.end_date is None
