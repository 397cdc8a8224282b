"""
appointments/services/calendars/google.py

Google Calendar adapter.

Handles:
- OAuth code exchange and access token refresh
- Event listing (paginated, recurring events expanded)
- Token revocation on disconnect

The Google client libraries are synchronous; every call runs in a worker
thread via asyncio.to_thread.
"""

import asyncio
import logging
from datetime import date, datetime, timezone

import httpx
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ...config import settings
from ...errors import AuthExpired, ReauthRequired, RemoteUnavailable
from ...models import Platform
from ...timeutils import as_utc, get_zone
from .base import (
    CalendarAdapter,
    ConnectionCredentials,
    ConnectionGrant,
    DateRange,
    NormalizedEvent,
    RemoteCalendar,
    TokenGrant,
    all_day_interval,
)

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]

PAGE_SIZE = 250


def _parse_google_time(value: dict, fallback_tz: str) -> tuple[datetime | None, date | None]:
    """Return (instant, None) for timed values or (None, day) for all-day values."""
    if value.get("dateTime"):
        raw = value["dateTime"].replace("Z", "+00:00")
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=get_zone(value.get("timeZone") or fallback_tz))
        return parsed.astimezone(timezone.utc), None
    if value.get("date"):
        return None, date.fromisoformat(value["date"])
    return None, None


def _normalize_event(item: dict, calendar_id: str, tz_name: str) -> NormalizedEvent | None:
    # Cancelled instances and "free" (transparent) events never block time
    if item.get("status") == "cancelled":
        return None
    if item.get("transparency") == "transparent":
        return None

    start, start_day = _parse_google_time(item.get("start") or {}, tz_name)
    end, end_day = _parse_google_time(item.get("end") or {}, tz_name)

    is_all_day = start_day is not None
    if is_all_day:
        start, end = all_day_interval(start_day, end_day, tz_name)
    if start is None or end is None or end <= start:
        logger.warning(f"Skipping Google event with unusable times: {item.get('id')}")
        return None

    return NormalizedEvent(
        external_id=item["id"],
        calendar_id=calendar_id,
        title=item.get("summary") or "(no title)",
        start=start,
        end=end,
        is_all_day=is_all_day,
        location=item.get("location"),
        description=item.get("description"),
    )


def _map_http_error(e: HttpError):
    status = getattr(e.resp, "status", None)
    if status == 401:
        return AuthExpired(f"Google rejected the access token: {e}")
    return RemoteUnavailable(f"Google Calendar request failed ({status}): {e}")


class GoogleCalendarAdapter(CalendarAdapter):
    platform = Platform.GOOGLE

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        service_builder=None,
    ):
        self.client_id = client_id if client_id is not None else settings.google_client_id
        self.client_secret = client_secret if client_secret is not None else settings.google_client_secret
        self.redirect_uri = redirect_uri if redirect_uri is not None else settings.google_redirect_uri
        self._service_builder = service_builder or self._build_service

    def _client_config(self) -> dict:
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _credentials(self, access_token: str | None, refresh_token: str | None) -> Credentials:
        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )

    def _build_service(self, access_token: str, refresh_token: str | None):
        """Build Google Calendar API service client."""
        credentials = self._credentials(access_token, refresh_token)
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)

    # ── Events ───────────────────────────────────────────────────────────

    async def list_events(
        self,
        credentials: ConnectionCredentials,
        calendar_id: str,
        window: DateRange,
    ) -> list[NormalizedEvent]:
        return await asyncio.to_thread(self._list_events_sync, credentials, calendar_id, window)

    def _list_events_sync(
        self,
        credentials: ConnectionCredentials,
        calendar_id: str,
        window: DateRange,
    ) -> list[NormalizedEvent]:
        service = self._service_builder(credentials.access_token, credentials.refresh_token)

        events: list[NormalizedEvent] = []
        page_token = None
        while True:
            try:
                response = service.events().list(
                    calendarId=calendar_id,
                    timeMin=window.start.isoformat(),
                    timeMax=window.end.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=PAGE_SIZE,
                    pageToken=page_token,
                ).execute()
            except HttpError as e:
                logger.error(f"Failed to list Google events for {calendar_id}: {e}")
                raise _map_http_error(e) from e
            except OSError as e:
                # socket timeouts and connection resets
                raise RemoteUnavailable(f"Google Calendar request failed: {e}") from e

            for item in response.get("items", []):
                event = _normalize_event(item, calendar_id, credentials.timezone)
                if event is not None:
                    events.append(event)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Fetched {len(events)} Google events from {calendar_id}")
        return events

    async def list_calendars(self, credentials: ConnectionCredentials) -> list[RemoteCalendar]:
        return await asyncio.to_thread(self._list_calendars_sync, credentials)

    def _list_calendars_sync(self, credentials: ConnectionCredentials) -> list[RemoteCalendar]:
        service = self._service_builder(credentials.access_token, credentials.refresh_token)

        calendars: list[RemoteCalendar] = []
        page_token = None
        while True:
            try:
                response = service.calendarList().list(pageToken=page_token).execute()
            except HttpError as e:
                logger.error(f"Failed to list Google calendars: {e}")
                raise _map_http_error(e) from e
            except OSError as e:
                raise RemoteUnavailable(f"Google Calendar request failed: {e}") from e

            for item in response.get("items", []):
                calendars.append(RemoteCalendar(
                    id=item["id"],
                    name=item.get("summaryOverride") or item.get("summary") or item["id"],
                    is_primary=bool(item.get("primary")),
                    can_write=item.get("accessRole") in ("owner", "writer"),
                ))

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        calendars.sort(key=lambda c: not c.is_primary)
        return calendars

    # ── OAuth ────────────────────────────────────────────────────────────

    def _flow(self) -> Flow:
        # The callback builds a new Flow, so no PKCE verifier survives between the two
        return Flow.from_client_config(
            self._client_config(),
            scopes=SCOPES,
            redirect_uri=self.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def get_oauth_url(self, state: str) -> str:
        flow = self._flow()
        authorization_url, _ = flow.authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            state=state,
            prompt="consent",
        )
        return authorization_url

    async def connect(self, auth_code: str, *, account: str | None = None) -> ConnectionGrant:
        return await asyncio.to_thread(self._connect_sync, auth_code)

    def _connect_sync(self, auth_code: str) -> ConnectionGrant:
        flow = self._flow()
        try:
            flow.fetch_token(code=auth_code)
        except Exception as e:
            logger.error(f"Google token exchange failed: {e}")
            raise ReauthRequired(f"Google token exchange failed: {e}") from e

        credentials = flow.credentials
        service = self._service_builder(credentials.token, credentials.refresh_token)
        try:
            primary = service.calendars().get(calendarId="primary").execute()
        except HttpError as e:
            raise _map_http_error(e) from e

        # The primary calendar id is the account's email address
        return ConnectionGrant(
            platform=Platform.GOOGLE,
            account_email=primary.get("id", ""),
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=as_utc(credentials.expiry),
            calendar_id="primary",
            calendar_name=primary.get("summary"),
        )

    async def refresh_token(self, refresh_token: str | None) -> TokenGrant:
        if not refresh_token:
            raise ReauthRequired("Google connection has no refresh token")
        return await asyncio.to_thread(self._refresh_sync, refresh_token)

    def _refresh_sync(self, refresh_token: str) -> TokenGrant:
        credentials = self._credentials(None, refresh_token)
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            if getattr(e, "retryable", False):
                raise RemoteUnavailable(f"Google token refresh failed: {e}") from e
            logger.error(f"Google token refresh rejected: {e}")
            raise ReauthRequired(f"Google token refresh rejected: {e}") from e
        except TransportError as e:
            raise RemoteUnavailable(f"Google token endpoint unreachable: {e}") from e

        return TokenGrant(
            access_token=credentials.token,
            # Google keeps the original refresh token unless it rotates one
            refresh_token=credentials.refresh_token or refresh_token,
            expires_at=as_utc(credentials.expiry),
        )

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        token = credentials.refresh_token or credentials.access_token
        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                response = await client.post(REVOKE_URI, params={"token": token})
            if response.status_code >= 400:
                logger.warning(f"Google token revoke returned {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Google token revoke failed: {e}")
