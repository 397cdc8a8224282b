"""
appointments/services/sync.py

Sync orchestrator: pulls remote calendars through the platform adapters and
materializes them into the local event cache.

State per connection: IDLE → SYNCING → {IDLE, DEGRADED}.

- At most one sync per connection runs at a time (in-process active set);
  a second request returns "sync already in progress" instead of queuing.
- Events are upserted by (connection_id, external_event_id); a row keeps the
  calendar that first cached it when the same event shows up in several.
  Cached rows in the queried calendar/window that the remote no longer
  returns are pruned.
- Only full-window cycles move last_sync_at; day-scoped lookup fetches are
  tracked per (connection, date) in memory.
- One calendar failing does not stop the others of the same connection.
- AuthExpired triggers one forced refresh and one retry; a second
  AuthExpired deactivates the connection.
- Adapter and refresh errors become result records, never exceptions.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta

from sqlalchemy.orm import joinedload, sessionmaker

from ..config import settings
from ..errors import AppointmentsError, AuthExpired, NotFound, ReauthRequired
from ..models import CalendarConnection, CalendarEvent, Provider, SyncStatus
from ..timeutils import as_utc, get_zone, local_day_bounds, utcnow
from .calendars import (
    AdapterRegistry,
    ConnectionCredentials,
    DateRange,
    NormalizedEvent,
    credentials_for,
    get_adapter,
)
from .tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

ALREADY_IN_PROGRESS = "sync already in progress"


@dataclass
class CalendarSyncResult:
    calendar_id: str
    success: bool
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    error: str | None = None


@dataclass
class SyncResult:
    connection_id: str
    success: bool
    status: SyncStatus = SyncStatus.IDLE
    skipped: bool = False
    message: str | None = None
    calendars: list[CalendarSyncResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class _CacheWriteStats:
    created: int = 0
    updated: int = 0
    deleted: int = 0


class _ConnectionDegraded(Exception):
    """Second AuthExpired within one cycle; the connection is deactivated."""


class SyncOrchestrator:

    def __init__(
        self,
        session_factory: sessionmaker,
        token_manager: TokenLifecycleManager,
        adapters: AdapterRegistry,
        concurrency: int | None = None,
        window_days: int | None = None,
    ):
        self._session_factory = session_factory
        self._tokens = token_manager
        self._adapters = adapters
        self.concurrency = concurrency or settings.sync_concurrency
        self.window_days = window_days or settings.sync_window_days
        # connection ids and "provider:<id>" keys of syncs in flight
        self._active: set[str] = set()
        # (connection_id, date) -> time of the last lookup fetch of that day
        self._lookup_marks: dict[tuple[str, date], datetime] = {}

    # ── State ────────────────────────────────────────────────────────────

    def is_syncing(self, connection_id: str) -> bool:
        return connection_id in self._active

    async def get_state(self, connection_id: str) -> SyncStatus:
        if connection_id in self._active:
            return SyncStatus.SYNCING
        connection = await asyncio.to_thread(self._load_connection, connection_id)
        if not connection.is_active:
            return SyncStatus.DEGRADED
        return SyncStatus(connection.sync_status)

    def default_window(self, now: datetime | None = None) -> DateRange:
        now = now or utcnow()
        return DateRange(now, now + timedelta(days=self.window_days))

    # ── Single connection ────────────────────────────────────────────────

    async def sync_connection(
        self,
        connection_id: str,
        window: DateRange | None = None,
        watermark: bool = True,
    ) -> SyncResult:
        if connection_id in self._active:
            logger.warning(f"Sync for connection {connection_id} skipped: {ALREADY_IN_PROGRESS}")
            return SyncResult(
                connection_id=connection_id,
                success=True,
                status=SyncStatus.SYNCING,
                skipped=True,
                message=ALREADY_IN_PROGRESS,
            )

        self._active.add(connection_id)
        try:
            return await self._run_cycle(connection_id, window or self.default_window(), watermark)
        finally:
            self._active.discard(connection_id)

    async def _run_cycle(self, connection_id: str, window: DateRange, watermark: bool = True) -> SyncResult:
        connection = await asyncio.to_thread(self._load_connection, connection_id)
        if not connection.is_active or connection.reauth_required:
            # No automatic retries until the provider reconnects
            return SyncResult(
                connection_id=connection_id,
                success=False,
                status=SyncStatus.DEGRADED,
                message="connection inactive; reauthentication required",
            )

        await asyncio.to_thread(self._set_status, connection_id, SyncStatus.SYNCING)
        logger.info(
            f"Sync started for connection {connection_id} ({connection.platform.value}) "
            f"window {window.start.isoformat()} .. {window.end.isoformat()}"
        )

        try:
            access_token = await self._tokens.ensure_valid_token(connection_id)
        except ReauthRequired as e:
            # Token manager already deactivated the connection
            return SyncResult(connection_id, success=False, status=SyncStatus.DEGRADED, message=e.message)
        except AppointmentsError as e:
            await asyncio.to_thread(self._finish, connection_id, SyncStatus.IDLE, e.message, False)
            return SyncResult(connection_id, success=False, status=SyncStatus.IDLE, message=e.message)

        credentials = replace(
            credentials_for(connection, connection.provider.timezone),
            access_token=access_token,
        )
        adapter = get_adapter(self._adapters, connection.platform)
        cycle = {"credentials": credentials, "refreshed": False}

        calendar_results: list[CalendarSyncResult] = []
        degraded_reason = None
        for calendar_id in self._calendars_to_sync(connection):
            try:
                events = await self._fetch(adapter, connection_id, calendar_id, window, cycle)
                stats = await asyncio.to_thread(
                    self._write_cache, connection, calendar_id, window, events,
                )
                calendar_results.append(CalendarSyncResult(
                    calendar_id=calendar_id,
                    success=True,
                    fetched=len(events),
                    created=stats.created,
                    updated=stats.updated,
                    deleted=stats.deleted,
                ))
            except _ConnectionDegraded as e:
                degraded_reason = str(e)
                calendar_results.append(CalendarSyncResult(calendar_id, success=False, error=degraded_reason))
                break
            except ReauthRequired as e:
                degraded_reason = e.message
                calendar_results.append(CalendarSyncResult(calendar_id, success=False, error=e.message))
                break
            except AppointmentsError as e:
                logger.warning(f"Calendar {calendar_id} of connection {connection_id} failed: {e.message}")
                calendar_results.append(CalendarSyncResult(calendar_id, success=False, error=e.message))
            except Exception as e:
                logger.exception(f"Unexpected error syncing calendar {calendar_id} of connection {connection_id}")
                calendar_results.append(CalendarSyncResult(calendar_id, success=False, error=str(e)))

        if degraded_reason is not None:
            return SyncResult(
                connection_id=connection_id,
                success=False,
                status=SyncStatus.DEGRADED,
                message=degraded_reason,
                calendars=calendar_results,
            )

        errors = [f"{r.calendar_id}: {r.error}" for r in calendar_results if not r.success]
        any_success = any(r.success for r in calendar_results) or not calendar_results
        await asyncio.to_thread(
            self._finish, connection_id, SyncStatus.IDLE, "; ".join(errors) or None, any_success and watermark,
        )
        logger.info(
            f"Sync finished for connection {connection_id}: "
            f"{sum(r.success for r in calendar_results)}/{len(calendar_results)} calendar(s) ok"
        )
        return SyncResult(
            connection_id=connection_id,
            success=not errors,
            status=SyncStatus.IDLE,
            message="; ".join(errors) or None,
            calendars=calendar_results,
        )

    async def _fetch(self, adapter, connection_id: str, calendar_id: str, window: DateRange, cycle: dict) -> list[NormalizedEvent]:
        credentials: ConnectionCredentials = cycle["credentials"]
        try:
            return await adapter.list_events(credentials, calendar_id, window)
        except AuthExpired as first:
            if cycle["refreshed"]:
                await self._degrade(connection_id, first.message)
                raise _ConnectionDegraded(first.message) from first

        # One forced refresh per cycle, then one retry
        cycle["refreshed"] = True
        logger.info(f"Access token rejected for connection {connection_id}, refreshing once")
        new_token = await self._tokens.force_refresh(connection_id, credentials.access_token)
        cycle["credentials"] = credentials = replace(credentials, access_token=new_token)
        try:
            return await adapter.list_events(credentials, calendar_id, window)
        except AuthExpired as second:
            await self._degrade(connection_id, second.message)
            raise _ConnectionDegraded(second.message) from second

    async def _degrade(self, connection_id: str, reason: str) -> None:
        await self._tokens.mark_reauth_required(connection_id, f"Access token rejected after refresh: {reason}")

    @staticmethod
    def _calendars_to_sync(connection: CalendarConnection) -> list[str]:
        if not connection.sync_events:
            return []
        return [
            calendar_id for calendar_id in connection.calendar_ids()
            if connection.calendar_flag(calendar_id, "sync_enabled")
        ]

    # ── Fan-out ──────────────────────────────────────────────────────────

    async def _sync_many(
        self,
        connection_ids: list[str],
        window: DateRange | None,
        watermark: bool = True,
    ) -> list[SyncResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(connection_id: str) -> SyncResult:
            async with semaphore:
                try:
                    return await self.sync_connection(connection_id, window, watermark)
                except Exception as e:
                    logger.exception(f"Sync of connection {connection_id} failed")
                    return SyncResult(connection_id, success=False, message=str(e))

        return list(await asyncio.gather(*(_guarded(cid) for cid in connection_ids)))

    async def sync_all_calendars(self, provider_id: str, window: DateRange | None = None) -> dict:
        key = f"provider:{provider_id}"
        if key in self._active:
            logger.warning(f"Provider sync for {provider_id} skipped: {ALREADY_IN_PROGRESS}")
            return {"provider_id": provider_id, "success": True, "skipped": True,
                    "message": ALREADY_IN_PROGRESS, "results": []}

        self._active.add(key)
        try:
            connection_ids = await asyncio.to_thread(self._active_connection_ids, provider_id)
            results = await self._sync_many(connection_ids, window)
        finally:
            self._active.discard(key)

        return {
            "provider_id": provider_id,
            "success": all(r.success for r in results),
            "skipped": False,
            "message": None,
            "results": [r.to_dict() for r in results],
        }

    async def sync_for_booking_lookup(self, provider_id: str, target_date: date) -> list[SyncResult]:
        """
        Fast path before an availability query: fetch only the provider-local
        day of target_date from booking-enabled connections whose cache holds
        no fresh copy of that day. Days already over are not fetched. Never
        raises.
        """
        try:
            tz_name, targets = await asyncio.to_thread(self._lookup_targets, provider_id)
            if not targets:
                return []
            start, end = local_day_bounds(target_date, get_zone(tz_name))
            now = utcnow()
            if end <= now:
                return []
            fresh_after = now - timedelta(seconds=settings.lookup_freshness_seconds)
            self._lookup_marks = {
                key: marked for key, marked in self._lookup_marks.items() if marked >= fresh_after
            }

            stale = [
                connection_id for connection_id, last_sync_at in targets
                if not self._covers_day(connection_id, last_sync_at, target_date, start, end, fresh_after)
            ]
            if not stale:
                return []
            results = await self._sync_many(stale, DateRange(start, end), watermark=False)
            for result in results:
                if result.success and not result.skipped:
                    self._lookup_marks[(result.connection_id, target_date)] = now
            return results
        except Exception:
            logger.exception(f"Booking lookup sync for provider {provider_id} failed")
            return []

    def _covers_day(
        self,
        connection_id: str,
        last_sync_at: datetime | None,
        target_date: date,
        day_start: datetime,
        day_end: datetime,
        fresh_after: datetime,
    ) -> bool:
        """A recent lookup fetch of that day, or a recent full sync whose window reached it."""
        marked = self._lookup_marks.get((connection_id, target_date))
        if marked is not None and marked >= fresh_after:
            return True
        if last_sync_at is None:
            return False
        synced = as_utc(last_sync_at)
        return (
            synced >= fresh_after
            and synced < day_end
            and day_start < synced + timedelta(days=self.window_days)
        )

    async def sync_due_connections(self, now: datetime | None = None) -> list[SyncResult]:
        """Cron entry: sync active connections whose sync_frequency has elapsed."""
        now = now or utcnow()
        connection_ids = await asyncio.to_thread(self._due_connection_ids, now)
        logger.info(f"Scheduled sync: {len(connection_ids)} connection(s) due")
        return await self._sync_many(connection_ids, self.default_window(now))

    async def backfill_connection(self, connection_id: str, now: datetime | None = None) -> list[SyncResult]:
        """Full-range fetch, one chunk at a time under a single in-flight marker."""
        if connection_id in self._active:
            return [SyncResult(connection_id, success=True, status=SyncStatus.SYNCING,
                               skipped=True, message=ALREADY_IN_PROGRESS)]

        now = now or utcnow()
        start = now - timedelta(days=settings.backfill_days_back)
        end = now + timedelta(days=settings.backfill_days_ahead)
        chunk = timedelta(days=settings.backfill_chunk_days)

        self._active.add(connection_id)
        try:
            results = []
            cursor = start
            while cursor < end:
                chunk_end = min(cursor + chunk, end)
                result = await self._run_cycle(connection_id, DateRange(cursor, chunk_end))
                results.append(result)
                if result.status == SyncStatus.DEGRADED:
                    break
                cursor = chunk_end
            return results
        finally:
            self._active.discard(connection_id)

    # ── Persistence (runs in worker threads) ─────────────────────────────

    def _load_connection(self, connection_id: str) -> CalendarConnection:
        db = self._session_factory()
        try:
            connection = (
                db.query(CalendarConnection)
                .options(joinedload(CalendarConnection.provider))
                .filter(CalendarConnection.id == connection_id)
                .first()
            )
            if connection is None:
                raise NotFound(f"Calendar connection {connection_id} not found")
            return connection
        finally:
            db.close()

    def _set_status(self, connection_id: str, status: SyncStatus) -> None:
        db = self._session_factory()
        try:
            connection = db.get(CalendarConnection, connection_id)
            if connection is not None:
                connection.sync_status = status
                db.commit()
        finally:
            db.close()

    def _finish(self, connection_id: str, status: SyncStatus, error: str | None, touch: bool) -> None:
        db = self._session_factory()
        try:
            connection = db.get(CalendarConnection, connection_id)
            if connection is None:
                return
            connection.sync_status = status
            connection.last_sync_error = error
            if touch:
                connection.last_sync_at = utcnow()
            db.commit()
        finally:
            db.close()

    def _write_cache(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        window: DateRange,
        events: list[NormalizedEvent],
    ) -> _CacheWriteStats:
        stats = _CacheWriteStats()
        fetched = {event.external_id: event for event in events}
        now = utcnow()

        db = self._session_factory()
        try:
            existing = {}
            if fetched:
                rows = (
                    db.query(CalendarEvent)
                    .filter(
                        CalendarEvent.connection_id == connection.id,
                        CalendarEvent.external_event_id.in_(list(fetched)),
                    )
                    .all()
                )
                existing = {row.external_event_id: row for row in rows}

            for external_id, event in fetched.items():
                row = existing.get(external_id)
                if row is None:
                    db.add(CalendarEvent(
                        provider_id=connection.provider_id,
                        connection_id=connection.id,
                        external_event_id=external_id,
                        platform=connection.platform,
                        calendar_id=calendar_id,
                        title=event.title,
                        description=event.description,
                        location=event.location,
                        start_time=as_utc(event.start),
                        end_time=as_utc(event.end),
                        is_all_day=event.is_all_day,
                        last_sync_at=now,
                    ))
                    stats.created += 1
                elif _apply_remote_fields(row, event):
                    row.last_sync_at = now
                    stats.updated += 1

            # Prune only inside the queried calendar and window
            stale_query = db.query(CalendarEvent).filter(
                CalendarEvent.connection_id == connection.id,
                CalendarEvent.calendar_id == calendar_id,
                CalendarEvent.start_time < window.end,
                CalendarEvent.end_time > window.start,
            )
            if fetched:
                stale_query = stale_query.filter(CalendarEvent.external_event_id.notin_(list(fetched)))
            for row in stale_query.all():
                db.delete(row)
                stats.deleted += 1

            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            f"Cache for {connection.id}/{calendar_id}: "
            f"+{stats.created} ~{stats.updated} -{stats.deleted}"
        )
        return stats

    def _active_connection_ids(self, provider_id: str) -> list[str]:
        db = self._session_factory()
        try:
            rows = (
                db.query(CalendarConnection.id)
                .filter(
                    CalendarConnection.provider_id == provider_id,
                    CalendarConnection.is_active.is_(True),
                )
                .all()
            )
            return [row.id for row in rows]
        finally:
            db.close()

    def _lookup_targets(self, provider_id: str) -> tuple[str, list[tuple[str, datetime | None]]]:
        db = self._session_factory()
        try:
            provider = db.get(Provider, provider_id)
            if provider is None:
                return "UTC", []
            connections = (
                db.query(CalendarConnection)
                .filter(
                    CalendarConnection.provider_id == provider_id,
                    CalendarConnection.is_active.is_(True),
                    CalendarConnection.allow_bookings.is_(True),
                    CalendarConnection.sync_events.is_(True),
                )
                .all()
            )
            return provider.timezone, [(c.id, c.last_sync_at) for c in connections]
        finally:
            db.close()

    def _due_connection_ids(self, now: datetime) -> list[str]:
        db = self._session_factory()
        try:
            connections = (
                db.query(CalendarConnection)
                .filter(
                    CalendarConnection.is_active.is_(True),
                    CalendarConnection.sync_events.is_(True),
                )
                .all()
            )
            return [
                c.id for c in connections
                if c.last_sync_at is None
                or as_utc(c.last_sync_at) + timedelta(minutes=c.sync_frequency or 15) <= now
            ]
        finally:
            db.close()


def _apply_remote_fields(row: CalendarEvent, event: NormalizedEvent) -> bool:
    """
    Copy remote-owned fields onto a cached row. Booking policy and the owning
    calendar are left alone.
    """
    changed = False
    updates = {
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "is_all_day": event.is_all_day,
    }
    for attr, value in updates.items():
        if getattr(row, attr) != value:
            setattr(row, attr, value)
            changed = True
    if as_utc(row.start_time) != as_utc(event.start):
        row.start_time = as_utc(event.start)
        changed = True
    if as_utc(row.end_time) != as_utc(event.end):
        row.end_time = as_utc(event.end)
        changed = True
    return changed
