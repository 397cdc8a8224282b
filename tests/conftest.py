"""Shared fixtures: a file-backed SQLite database per test and row factories."""

from datetime import datetime, timedelta, timezone

import pytest

from appointments.database import create_db_engine, create_session_factory
from appointments.models import (
    AvailabilityTemplate,
    Base,
    CalendarConnection,
    CalendarEvent,
    Platform,
    Provider,
    TimeSlot,
)

# Monday 2026-03-02, 06:00 UTC
NOW = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_provider(db):
    counter = {"n": 0}

    def _make(**overrides) -> Provider:
        counter["n"] += 1
        fields = {
            "name": f"Provider {counter['n']}",
            "email": f"provider{counter['n']}@example.com",
            "timezone": "UTC",
            "buffer_minutes": 0,
            "advance_booking_days": 30,
            "allowed_durations": [30, 60],
        }
        fields.update(overrides)
        provider = Provider(**fields)
        db.add(provider)
        db.commit()
        return provider

    return _make


@pytest.fixture
def make_template(db):
    def _make(provider, slots=None, is_default=True, name="Working hours", **overrides) -> AvailabilityTemplate:
        """slots: list of (day_of_week, "HH:MM", "HH:MM"); defaults to 08:00-17:00 every day."""
        if slots is None:
            slots = [(day, "08:00", "17:00") for day in range(7)]
        template = AvailabilityTemplate(provider_id=provider.id, name=name, is_default=is_default, **overrides)
        db.add(template)
        db.flush()
        for day, start, end in slots:
            db.add(TimeSlot(template_id=template.id, day_of_week=day, start_time=start, end_time=end))
        db.commit()
        return template

    return _make


@pytest.fixture
def make_connection(db):
    counter = {"n": 0}

    def _make(provider, **overrides) -> CalendarConnection:
        counter["n"] += 1
        fields = {
            "provider_id": provider.id,
            "platform": Platform.GOOGLE,
            "account_email": f"account{counter['n']}@example.com",
            "calendar_id": "primary",
            "access_token": "token-1",
            "refresh_token": "refresh-1",
            "token_expiry": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        fields.update(overrides)
        connection = CalendarConnection(**fields)
        db.add(connection)
        db.commit()
        return connection

    return _make


@pytest.fixture
def make_event(db):
    counter = {"n": 0}

    def _make(connection, start, end, **overrides) -> CalendarEvent:
        counter["n"] += 1
        fields = {
            "provider_id": connection.provider_id,
            "connection_id": connection.id,
            "external_event_id": f"ext-{counter['n']}",
            "platform": connection.platform,
            "calendar_id": connection.calendar_id,
            "title": f"Event {counter['n']}",
            "start_time": start,
            "end_time": end,
        }
        fields.update(overrides)
        event = CalendarEvent(**fields)
        db.add(event)
        db.commit()
        return event

    return _make
