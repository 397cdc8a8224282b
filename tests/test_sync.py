import asyncio
from datetime import datetime, time, timedelta, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from appointments.errors import RemoteUnavailable
from appointments.models import CalendarConnection, CalendarEvent, Platform, SyncStatus
from appointments.services.calendars import DateRange
from appointments.services.sync import ALREADY_IN_PROGRESS, SyncOrchestrator
from appointments.services.tokens import TokenLifecycleManager
from appointments.timeutils import as_utc

from .fakes import FakeAdapter, event, unauthorized

T0 = datetime(2026, 3, 2, tzinfo=timezone.utc)
WINDOW = DateRange(T0, T0 + timedelta(days=7))


def _at(day, hour):
    return T0 + timedelta(days=day, hours=hour)


@pytest.fixture
def notify():
    return MagicMock()


@pytest.fixture
def build(session_factory, notify):
    def _build(*adapters, concurrency=2):
        registry = {adapter.platform: adapter for adapter in adapters}
        tokens = TokenLifecycleManager(session_factory, registry, threshold_minutes=5, notify=notify)
        return SyncOrchestrator(session_factory, tokens, registry, concurrency=concurrency, window_days=7)

    return _build


def _events(session_factory, connection_id):
    db = session_factory()
    try:
        return {
            row.external_event_id: row
            for row in db.query(CalendarEvent).filter_by(connection_id=connection_id).all()
        }
    finally:
        db.close()


def _connection(session_factory, connection_id) -> CalendarConnection:
    db = session_factory()
    try:
        return db.get(CalendarConnection, connection_id)
    finally:
        db.close()


async def test_sync_is_idempotent(build, session_factory, make_provider, make_connection):
    adapter = FakeAdapter(events={"primary": [
        event("a", _at(0, 10), _at(0, 11)),
        event("b", _at(1, 10), _at(1, 11)),
    ]})
    orchestrator = build(adapter)
    connection = make_connection(make_provider())

    first = await orchestrator.sync_connection(connection.id, WINDOW)
    second = await orchestrator.sync_connection(connection.id, WINDOW)

    assert first.success and second.success
    assert first.calendars[0].created == 2
    assert (second.calendars[0].created, second.calendars[0].updated, second.calendars[0].deleted) == (0, 0, 0)
    assert set(_events(session_factory, connection.id)) == {"a", "b"}

    stored = _connection(session_factory, connection.id)
    assert stored.sync_status == SyncStatus.IDLE
    assert stored.last_sync_at is not None


async def test_resync_updates_remote_fields_and_keeps_booking_policy(
    build, db, session_factory, make_provider, make_connection,
):
    adapter = FakeAdapter(events={"primary": [event("a", _at(0, 10), _at(0, 11), title="Office hours")]})
    orchestrator = build(adapter)
    connection = make_connection(make_provider())
    await orchestrator.sync_connection(connection.id, WINDOW)

    row = db.query(CalendarEvent).filter_by(external_event_id="a").one()
    row.allow_bookings = True
    row.max_bookings = 3
    db.commit()

    adapter.events["primary"] = [event("a", _at(0, 10), _at(0, 12), title="Long office hours")]
    result = await orchestrator.sync_connection(connection.id, WINDOW)

    assert result.calendars[0].updated == 1
    cached = _events(session_factory, connection.id)["a"]
    assert cached.title == "Long office hours"
    assert cached.allow_bookings is True
    assert cached.max_bookings == 3


async def test_prune_is_limited_to_calendar_and_window(
    build, session_factory, make_provider, make_connection, make_event,
):
    adapter = FakeAdapter(events={"primary": [event("kept", _at(0, 10), _at(0, 11))]})
    orchestrator = build(adapter)
    connection = make_connection(make_provider())
    make_event(connection, _at(2, 9), _at(2, 10), external_event_id="deleted-remotely")
    make_event(connection, _at(20, 9), _at(20, 10), external_event_id="outside-window")
    make_event(connection, _at(2, 9), _at(2, 10), external_event_id="other-calendar", calendar_id="work")

    result = await orchestrator.sync_connection(connection.id, WINDOW)

    assert result.calendars[0].deleted == 1
    assert set(_events(session_factory, connection.id)) == {"kept", "outside-window", "other-calendar"}


async def test_one_calendar_failing_does_not_stop_the_others(
    build, session_factory, make_provider, make_connection,
):
    adapter = FakeAdapter(
        events={"primary": [event("a", _at(0, 10), _at(0, 11))]},
        failures={"work": [RemoteUnavailable("Google Calendar request failed (503)")]},
    )
    orchestrator = build(adapter)
    connection = make_connection(make_provider(), selected_calendars=["work"])

    result = await orchestrator.sync_connection(connection.id, WINDOW)

    assert result.success is False
    assert result.status == SyncStatus.IDLE
    outcome = {r.calendar_id: r.success for r in result.calendars}
    assert outcome == {"primary": True, "work": False}
    assert set(_events(session_factory, connection.id)) == {"a"}

    stored = _connection(session_factory, connection.id)
    assert stored.is_active is True
    assert "work" in stored.last_sync_error


async def test_calendar_with_sync_disabled_is_not_fetched(build, make_provider, make_connection):
    adapter = FakeAdapter()
    orchestrator = build(adapter)
    connection = make_connection(
        make_provider(),
        selected_calendars=["holidays"],
        calendar_settings={"holidays": {"sync_enabled": False}},
    )

    await orchestrator.sync_connection(connection.id, WINDOW)

    assert [calendar_id for calendar_id, _ in adapter.list_calls] == ["primary"]


async def test_second_sync_of_same_connection_is_rejected(build, make_provider, make_connection):
    adapter = FakeAdapter(delay=0.1)
    orchestrator = build(adapter)
    connection = make_connection(make_provider())

    results = await asyncio.gather(
        orchestrator.sync_connection(connection.id, WINDOW),
        orchestrator.sync_connection(connection.id, WINDOW),
    )

    skipped = [r for r in results if r.skipped]
    assert len(skipped) == 1
    assert skipped[0].message == ALREADY_IN_PROGRESS
    assert len(adapter.list_calls) == 1
    assert not orchestrator.is_syncing(connection.id)


async def test_expired_token_is_refreshed_once_and_retried(build, session_factory, make_provider, make_connection):
    adapter = FakeAdapter(
        events={"primary": [event("a", _at(0, 10), _at(0, 11))]},
        failures={"primary": [unauthorized()]},
    )
    orchestrator = build(adapter)
    connection = make_connection(make_provider())

    result = await orchestrator.sync_connection(connection.id, WINDOW)

    assert result.success is True
    assert adapter.refresh_calls == 1
    assert adapter.list_calls == [("primary", "token-1"), ("primary", "token-2")]
    assert _connection(session_factory, connection.id).access_token == "token-2"


async def test_second_rejection_degrades_connection(build, notify, session_factory, make_provider, make_connection):
    adapter = FakeAdapter(failures={"primary": [unauthorized(), unauthorized()]})
    orchestrator = build(adapter)
    connection = make_connection(make_provider())

    result = await orchestrator.sync_connection(connection.id, WINDOW)

    assert result.success is False
    assert result.status == SyncStatus.DEGRADED
    stored = _connection(session_factory, connection.id)
    assert stored.is_active is False
    assert stored.reauth_required is True
    assert stored.sync_status == SyncStatus.DEGRADED
    notify.assert_called_once()
    assert notify.call_args.args[0] == "calendar_reauth_required"

    # no automatic retries afterwards
    calls = len(adapter.list_calls)
    again = await orchestrator.sync_connection(connection.id, WINDOW)
    assert again.status == SyncStatus.DEGRADED
    assert len(adapter.list_calls) == calls
    assert await orchestrator.get_state(connection.id) == SyncStatus.DEGRADED


async def test_provider_fan_out_isolates_failures(build, make_provider, make_connection):
    google = FakeAdapter(events={"primary": [event("a", _at(0, 10), _at(0, 11))]})
    outlook = FakeAdapter(
        platform=Platform.OUTLOOK,
        failures={"primary": [RemoteUnavailable("Outlook request failed (500)")]},
    )
    orchestrator = build(google, outlook)
    provider = make_provider()
    ok = make_connection(provider)
    broken = make_connection(provider, platform=Platform.OUTLOOK)
    make_connection(provider, is_active=False)

    summary = await orchestrator.sync_all_calendars(provider.id, WINDOW)

    assert summary["success"] is False
    by_id = {r["connection_id"]: r for r in summary["results"]}
    assert set(by_id) == {ok.id, broken.id}
    assert by_id[ok.id]["success"] is True
    assert by_id[ok.id]["status"] == "IDLE"
    assert by_id[broken.id]["success"] is False


async def test_booking_lookup_fetches_only_stale_connections_for_one_day(
    build, session_factory, make_provider, make_connection,
):
    adapter = FakeAdapter()
    orchestrator = build(adapter)
    provider = make_provider(timezone="America/New_York")
    now = datetime.now(timezone.utc)
    stale = make_connection(provider, last_sync_at=now - timedelta(hours=1))
    make_connection(provider, last_sync_at=now)
    make_connection(provider, allow_bookings=False)
    target = (now + timedelta(days=2)).date()

    results = await orchestrator.sync_for_booking_lookup(provider.id, target)

    assert [r.connection_id for r in results] == [stale.id]
    new_york = ZoneInfo("America/New_York")
    window = adapter.windows[0]
    assert window.start == datetime.combine(target, time.min, tzinfo=new_york)
    assert window.end == datetime.combine(target + timedelta(days=1), time.min, tzinfo=new_york)
    # a one-day fetch does not count as a full sync
    assert as_utc(_connection(session_factory, stale.id).last_sync_at) < now - timedelta(minutes=30)


async def test_lookups_fetch_each_day_and_leave_full_sync_due(
    build, session_factory, make_provider, make_connection,
):
    now = datetime.now(timezone.utc)
    first_day = (now + timedelta(days=2)).date()
    second_day = first_day + timedelta(days=1)

    def _noon(day):
        return datetime.combine(day, time(12), tzinfo=timezone.utc)

    adapter = FakeAdapter(events={"primary": [
        event("a", _noon(first_day), _noon(first_day) + timedelta(hours=1)),
        event("b", _noon(second_day), _noon(second_day) + timedelta(hours=1)),
    ]})
    orchestrator = build(adapter)
    connection = make_connection(make_provider())

    await orchestrator.sync_for_booking_lookup(connection.provider_id, first_day)
    await orchestrator.sync_for_booking_lookup(connection.provider_id, second_day)
    # same day again within the freshness window
    await orchestrator.sync_for_booking_lookup(connection.provider_id, first_day)

    assert len(adapter.list_calls) == 2
    assert set(_events(session_factory, connection.id)) == {"a", "b"}
    assert _connection(session_factory, connection.id).last_sync_at is None

    due = await orchestrator.sync_due_connections()

    assert [r.connection_id for r in due] == [connection.id]
    assert _connection(session_factory, connection.id).last_sync_at is not None


async def test_booking_lookup_skips_days_already_over(build, make_provider, make_connection):
    adapter = FakeAdapter()
    orchestrator = build(adapter)
    provider = make_provider()
    make_connection(provider)

    assert await orchestrator.sync_for_booking_lookup(provider.id, T0.date()) == []
    assert adapter.list_calls == []


async def test_booking_lookup_never_raises(build):
    orchestrator = build(FakeAdapter())

    assert await orchestrator.sync_for_booking_lookup("missing", T0.date()) == []


async def test_due_connections(build, make_provider, make_connection):
    adapter = FakeAdapter()
    orchestrator = build(adapter)
    provider = make_provider()
    now = datetime.now(timezone.utc)
    never = make_connection(provider)
    overdue = make_connection(provider, last_sync_at=now - timedelta(minutes=20), sync_frequency=15)
    make_connection(provider, last_sync_at=now - timedelta(minutes=5), sync_frequency=15)

    results = await orchestrator.sync_due_connections(now)

    assert {r.connection_id for r in results} == {never.id, overdue.id}


async def test_backfill_walks_the_range_in_chunks(build, make_provider, make_connection):
    adapter = FakeAdapter()
    orchestrator = build(adapter)
    connection = make_connection(make_provider())

    results = await orchestrator.backfill_connection(connection.id, now=T0)

    assert all(r.success for r in results)
    starts = [w.start for w in adapter.windows]
    assert starts == sorted(starts)
    assert adapter.windows[0].start == T0 - timedelta(days=30)
    assert adapter.windows[-1].end == T0 + timedelta(days=180)
    for previous, current in zip(adapter.windows, adapter.windows[1:]):
        assert previous.end == current.start


async def test_event_in_two_calendars_keeps_its_first_calendar(
    build, session_factory, make_provider, make_connection,
):
    adapter = FakeAdapter(events={
        "primary": [event("shared", _at(0, 10), _at(0, 11))],
        "work": [event("shared", _at(0, 10), _at(0, 11), calendar_id="work")],
    })
    orchestrator = build(adapter)
    connection = make_connection(make_provider(), selected_calendars=["work"])

    first = await orchestrator.sync_connection(connection.id, WINDOW)
    second = await orchestrator.sync_connection(connection.id, WINDOW)

    counts = [(r.calendar_id, r.created, r.updated, r.deleted) for r in first.calendars]
    assert counts == [("primary", 1, 0, 0), ("work", 0, 0, 0)]
    assert all((r.created, r.updated, r.deleted) == (0, 0, 0) for r in second.calendars)
    assert _events(session_factory, connection.id)["shared"].calendar_id == "primary"

    # once the first calendar drops it, the other one takes it over
    adapter.events["primary"] = []
    await orchestrator.sync_connection(connection.id, WINDOW)

    assert _events(session_factory, connection.id)["shared"].calendar_id == "work"


class _CountingAdapter(FakeAdapter):
    """Tracks how many list_events calls are in flight at once."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.peak = 0

    async def list_events(self, credentials, calendar_id, window):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            return await super().list_events(credentials, calendar_id, window)
        finally:
            self.in_flight -= 1


async def test_provider_fan_out_is_bounded(build, make_provider, make_connection):
    adapter = _CountingAdapter(delay=0.2)
    orchestrator = build(adapter, concurrency=2)
    provider = make_provider()
    for _ in range(5):
        make_connection(provider)

    summary = await orchestrator.sync_all_calendars(provider.id, WINDOW)

    assert summary["success"] is True
    assert len(adapter.list_calls) == 5
    assert adapter.peak == 2
