"""
Common contract for external calendar platforms.

Every adapter:
- returns events as NormalizedEvent with UTC instants
- hides pagination from the caller
- raises AuthExpired on 401 / invalid grant, RemoteUnavailable on
  outages, rate limits and timeouts
- never touches the database (persistence belongs to the sync orchestrator)
"""

import abc
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

import httpx

from ...errors import AuthExpired, RemoteUnavailable
from ...models import Platform
from ...timeutils import get_zone, local_day_bounds


@dataclass(frozen=True)
class DateRange:
    """Half-open fetch window [start, end) in UTC."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError("DateRange end must be after start")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class NormalizedEvent:
    external_id: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    is_all_day: bool = False
    location: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class RemoteCalendar:
    """A calendar the account can see on its platform."""
    id: str
    name: str
    is_primary: bool = False
    can_write: bool = True


@dataclass(frozen=True)
class ConnectionCredentials:
    """Snapshot of a connection handed to an adapter for one fetch."""
    connection_id: str
    platform: Platform
    account_email: str
    access_token: str
    refresh_token: str | None = None
    timezone: str = "UTC"
    subscription_id: str | None = None


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


@dataclass
class ConnectionGrant:
    """Result of connect(): everything needed to persist a new connection."""
    platform: Platform
    account_email: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    calendar_id: str = "primary"
    calendar_name: str | None = None
    calendars: list[str] = field(default_factory=list)


def expiry_from_seconds(expires_in, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = 3600
    if seconds <= 0:
        seconds = 3600
    return now + timedelta(seconds=seconds)


def all_day_interval(start_day: date, end_day: date | None, tz_name: str) -> tuple[datetime, datetime]:
    """
    Synthetic interval for an all-day event: local midnight of the first
    day to local midnight after the last day, in the provider's timezone.

    end_day is exclusive (as Google / Graph / iCal report it).
    """
    tz = get_zone(tz_name)
    start, _ = local_day_bounds(start_day, tz)
    if end_day is None or end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    end, _ = local_day_bounds(end_day, tz)
    return start, end


def raise_for_status(response: httpx.Response, platform: str) -> None:
    """Map an HTTP error response onto the adapter error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    if status == 401:
        raise AuthExpired(f"{platform} rejected the access token (401)")
    raise RemoteUnavailable(f"{platform} request failed ({status})")


class CalendarAdapter(abc.ABC):
    """Polymorphic platform adapter."""

    platform: Platform
    supports_webhooks: bool = True

    @abc.abstractmethod
    async def list_events(
        self,
        credentials: ConnectionCredentials,
        calendar_id: str,
        window: DateRange,
    ) -> list[NormalizedEvent]:
        """All events of one remote calendar overlapping the window."""

    @abc.abstractmethod
    async def connect(self, auth_code: str, *, account: str | None = None) -> ConnectionGrant:
        """Exchange an auth code (or app password) for a connection grant."""

    @abc.abstractmethod
    async def refresh_token(self, refresh_token: str | None) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises ReauthRequired when the grant is revoked or expired,
        RemoteUnavailable on transient failures.
        """

    @abc.abstractmethod
    async def list_calendars(self, credentials: ConnectionCredentials) -> list[RemoteCalendar]:
        """Every calendar of the account, primary first."""

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        """Release remote resources held for the connection (best effort)."""
        return None


class HttpCalendarAdapter(CalendarAdapter):
    """Adapter talking to its platform through httpx."""

    platform_label = "calendar"

    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float | None = None):
        self._http_client = http_client
        self._timeout = timeout

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteUnavailable(f"{self.platform_label} request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(f"{self.platform_label} request failed: {exc}") from exc
