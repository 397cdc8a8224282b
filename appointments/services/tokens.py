"""
appointments/services/tokens.py

Token lifecycle for calendar connections.

- Proactive refresh: a token expiring within the threshold is refreshed
  before use, not after a failed request.
- Refresh-then-use is serialized per connection with an asyncio.Lock, so a
  second caller waits for the first refresh and then reads the new token.
- A rejected refresh (revoked grant, expired refresh token) is terminal: the
  connection is deactivated and flagged for reauthentication.

Database access is synchronous and runs via asyncio.to_thread with a fresh
session per unit of work.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import sessionmaker

from ..config import settings
from ..errors import NotFound, ReauthRequired, RemoteUnavailable
from ..models import CalendarConnection, SyncStatus
from ..timeutils import as_utc, utcnow
from .calendars import AdapterRegistry, TokenGrant, get_adapter
from .events import emit_event

logger = logging.getLogger(__name__)


class TokenLifecycleManager:

    def __init__(
        self,
        session_factory: sessionmaker,
        adapters: AdapterRegistry,
        threshold_minutes: int | None = None,
        notify=emit_event,
    ):
        self._session_factory = session_factory
        self._adapters = adapters
        self.threshold = timedelta(
            minutes=threshold_minutes if threshold_minutes is not None
            else settings.token_refresh_threshold_minutes
        )
        self._notify = notify
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = self._locks[connection_id] = asyncio.Lock()
        return lock

    def needs_refresh(self, expires_at: datetime | None, now: datetime | None = None) -> bool:
        # Connections without an expiry (Apple app passwords) never refresh
        if expires_at is None:
            return False
        now = now or utcnow()
        return as_utc(expires_at) - now <= self.threshold

    # ── Public API ───────────────────────────────────────────────────────

    async def ensure_valid_token(self, connection_id: str) -> str:
        """Return an access token that is valid for at least the threshold."""
        async with self.lock_for(connection_id):
            connection = await asyncio.to_thread(self._load, connection_id)
            self._check_active(connection)
            if not self.needs_refresh(connection.token_expiry):
                return connection.access_token
            logger.info(f"Token for connection {connection_id} expires soon, refreshing")
            return await self._refresh_locked(connection)

    async def force_refresh(self, connection_id: str, stale_token: str) -> str:
        """
        Refresh after the remote rejected stale_token.

        When another caller already replaced the token while we waited for
        the lock, the new token is returned without a second refresh.
        """
        async with self.lock_for(connection_id):
            connection = await asyncio.to_thread(self._load, connection_id)
            self._check_active(connection)
            if connection.access_token != stale_token:
                return connection.access_token
            return await self._refresh_locked(connection)

    async def mark_reauth_required(self, connection_id: str, reason: str) -> None:
        provider_id = await asyncio.to_thread(self._deactivate, connection_id, reason)
        if provider_id is None:
            return
        logger.warning(f"Connection {connection_id} requires reauthentication: {reason}")
        self._notify("calendar_reauth_required", {
            "provider_id": provider_id,
            "connection_id": connection_id,
            "reason": reason,
        })

    async def refresh_expiring_tokens(self, horizon_hours: int | None = None) -> list[dict]:
        """
        Token maintenance: refresh every active token expiring within the horizon.

        Failures are reported per connection and never raised.
        """
        horizon = timedelta(
            hours=horizon_hours if horizon_hours is not None
            else settings.token_maintenance_horizon_hours
        )
        connection_ids = await asyncio.to_thread(self._expiring_ids, utcnow() + horizon)
        logger.info(f"Token maintenance: {len(connection_ids)} connection(s) expiring within {horizon}")

        results = []
        for connection_id in connection_ids:
            async with self.lock_for(connection_id):
                try:
                    connection = await asyncio.to_thread(self._load, connection_id)
                    self._check_active(connection)
                    await self._refresh_locked(connection)
                    results.append({"connection_id": connection_id, "success": True})
                except (ReauthRequired, RemoteUnavailable, NotFound) as e:
                    results.append({"connection_id": connection_id, "success": False, "error": e.message})
        return results

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _check_active(connection: CalendarConnection) -> None:
        if not connection.is_active or connection.reauth_required:
            raise ReauthRequired(f"Connection {connection.id} requires reauthentication")

    async def _refresh_locked(self, connection: CalendarConnection) -> str:
        adapter = get_adapter(self._adapters, connection.platform)
        try:
            grant = await adapter.refresh_token(connection.refresh_token)
        except ReauthRequired as e:
            await self.mark_reauth_required(connection.id, e.message)
            raise
        except RemoteUnavailable as e:
            logger.warning(f"Token refresh for connection {connection.id} failed transiently: {e}")
            raise

        await asyncio.to_thread(self._store_grant, connection.id, grant)
        logger.info(f"Token refreshed for connection {connection.id}")
        return grant.access_token

    def _load(self, connection_id: str) -> CalendarConnection:
        db = self._session_factory()
        try:
            connection = db.get(CalendarConnection, connection_id)
            if connection is None:
                raise NotFound(f"Calendar connection {connection_id} not found")
            return connection
        finally:
            db.close()

    def _store_grant(self, connection_id: str, grant: TokenGrant) -> None:
        db = self._session_factory()
        try:
            connection = db.get(CalendarConnection, connection_id)
            if connection is None:
                raise NotFound(f"Calendar connection {connection_id} not found")
            connection.access_token = grant.access_token
            if grant.refresh_token:
                connection.refresh_token = grant.refresh_token
            connection.token_expiry = grant.expires_at
            db.commit()
        finally:
            db.close()

    def _deactivate(self, connection_id: str, reason: str) -> str | None:
        db = self._session_factory()
        try:
            connection = db.get(CalendarConnection, connection_id)
            if connection is None:
                return None
            connection.is_active = False
            connection.reauth_required = True
            connection.sync_status = SyncStatus.DEGRADED
            connection.last_sync_error = reason
            db.commit()
            return connection.provider_id
        finally:
            db.close()

    def _expiring_ids(self, before: datetime) -> list[str]:
        db = self._session_factory()
        try:
            rows = (
                db.query(CalendarConnection.id)
                .filter(
                    CalendarConnection.is_active.is_(True),
                    CalendarConnection.reauth_required.is_(False),
                    CalendarConnection.token_expiry.isnot(None),
                    CalendarConnection.token_expiry <= before,
                )
                .all()
            )
            return [row.id for row in rows]
        finally:
            db.close()
