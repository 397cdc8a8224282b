import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from appointments.errors import ReauthRequired, RemoteUnavailable
from appointments.models import CalendarConnection, Platform, SyncStatus
from appointments.services.tokens import TokenLifecycleManager
from appointments.timeutils import as_utc

from .fakes import FakeAdapter


def _soon(minutes):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def notify():
    return MagicMock()


@pytest.fixture
def manager(session_factory, adapter, notify):
    return TokenLifecycleManager(
        session_factory,
        {Platform.GOOGLE: adapter},
        threshold_minutes=5,
        notify=notify,
    )


def _reload(session_factory, connection_id) -> CalendarConnection:
    db = session_factory()
    try:
        return db.get(CalendarConnection, connection_id)
    finally:
        db.close()


async def test_valid_token_is_returned_without_refresh(manager, adapter, make_provider, make_connection):
    connection = make_connection(make_provider(), token_expiry=_soon(60))

    assert await manager.ensure_valid_token(connection.id) == "token-1"
    assert adapter.refresh_calls == 0


async def test_token_near_expiry_is_refreshed_before_use(
    manager, adapter, session_factory, make_provider, make_connection,
):
    connection = make_connection(make_provider(), token_expiry=_soon(2))

    token = await manager.ensure_valid_token(connection.id)

    assert token == "token-2"
    assert adapter.refresh_calls == 1
    stored = _reload(session_factory, connection.id)
    assert stored.access_token == "token-2"
    assert as_utc(stored.token_expiry) > _soon(30)


async def test_concurrent_callers_share_one_refresh(session_factory, notify, make_provider, make_connection):
    adapter = FakeAdapter(delay=0.05)
    manager = TokenLifecycleManager(session_factory, {Platform.GOOGLE: adapter}, threshold_minutes=5, notify=notify)
    connection = make_connection(make_provider(), token_expiry=_soon(1))

    tokens = await asyncio.gather(
        manager.ensure_valid_token(connection.id),
        manager.ensure_valid_token(connection.id),
    )

    assert tokens == ["token-2", "token-2"]
    assert adapter.refresh_calls == 1


async def test_connection_without_expiry_never_refreshes(manager, adapter, make_provider, make_connection):
    connection = make_connection(make_provider(), platform=Platform.GOOGLE, token_expiry=None)

    assert await manager.ensure_valid_token(connection.id) == "token-1"
    assert adapter.refresh_calls == 0


async def test_rejected_refresh_deactivates_connection(
    session_factory, notify, make_provider, make_connection,
):
    adapter = FakeAdapter(refresh_error=ReauthRequired("invalid_grant"))
    manager = TokenLifecycleManager(session_factory, {Platform.GOOGLE: adapter}, threshold_minutes=5, notify=notify)
    provider = make_provider()
    connection = make_connection(provider, token_expiry=_soon(1))

    with pytest.raises(ReauthRequired):
        await manager.ensure_valid_token(connection.id)

    stored = _reload(session_factory, connection.id)
    assert stored.is_active is False
    assert stored.reauth_required is True
    assert stored.sync_status == SyncStatus.DEGRADED
    notify.assert_called_once()
    event_type, payload = notify.call_args.args
    assert event_type == "calendar_reauth_required"
    assert payload["provider_id"] == provider.id
    assert payload["connection_id"] == connection.id

    # no further refresh attempts once deactivated
    with pytest.raises(ReauthRequired):
        await manager.ensure_valid_token(connection.id)
    assert adapter.refresh_calls == 1


async def test_transient_refresh_failure_keeps_connection_active(
    session_factory, notify, make_provider, make_connection,
):
    adapter = FakeAdapter(refresh_error=RemoteUnavailable("503"))
    manager = TokenLifecycleManager(session_factory, {Platform.GOOGLE: adapter}, threshold_minutes=5, notify=notify)
    connection = make_connection(make_provider(), token_expiry=_soon(1))

    with pytest.raises(RemoteUnavailable):
        await manager.ensure_valid_token(connection.id)

    stored = _reload(session_factory, connection.id)
    assert stored.is_active is True
    assert stored.reauth_required is False
    notify.assert_not_called()


async def test_force_refresh_skips_when_token_already_replaced(manager, adapter, make_provider, make_connection):
    connection = make_connection(make_provider(), access_token="token-9", token_expiry=_soon(60))

    assert await manager.force_refresh(connection.id, "token-1") == "token-9"
    assert adapter.refresh_calls == 0

    assert await manager.force_refresh(connection.id, "token-9") == "token-2"
    assert adapter.refresh_calls == 1


async def test_maintenance_refreshes_tokens_within_horizon(
    session_factory, notify, make_provider, make_connection,
):
    google = FakeAdapter()
    outlook = FakeAdapter(platform=Platform.OUTLOOK, refresh_error=ReauthRequired("revoked"))
    manager = TokenLifecycleManager(
        session_factory,
        {Platform.GOOGLE: google, Platform.OUTLOOK: outlook},
        threshold_minutes=5,
        notify=notify,
    )
    provider = make_provider()
    expiring = make_connection(provider, token_expiry=_soon(120))
    revoked = make_connection(provider, platform=Platform.OUTLOOK, token_expiry=_soon(120))
    make_connection(provider, token_expiry=_soon(60 * 48))

    results = await manager.refresh_expiring_tokens(horizon_hours=24)

    by_id = {r["connection_id"]: r for r in results}
    assert set(by_id) == {expiring.id, revoked.id}
    assert by_id[expiring.id]["success"] is True
    assert by_id[revoked.id]["success"] is False
    assert _reload(session_factory, revoked.id).reauth_required is True
    assert google.refresh_calls == 1
