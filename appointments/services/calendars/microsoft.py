"""
Outlook and Teams calendars through Microsoft Graph.

Both platforms read the same Graph calendar endpoints; Teams differs only
in its OAuth application and scopes.
"""

import logging
from datetime import date, datetime, timezone
from urllib.parse import quote

import httpx

from ...config import settings
from ...errors import AuthExpired, ReauthRequired, RemoteUnavailable
from ...models import Platform
from .base import (
    ConnectionCredentials,
    ConnectionGrant,
    DateRange,
    HttpCalendarAdapter,
    NormalizedEvent,
    RemoteCalendar,
    TokenGrant,
    all_day_interval,
    expiry_from_seconds,
    raise_for_status,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

OUTLOOK_SCOPES = "https://graph.microsoft.com/Calendars.Read https://graph.microsoft.com/User.Read offline_access"
TEAMS_SCOPES = (
    "https://graph.microsoft.com/Calendars.Read https://graph.microsoft.com/OnlineMeetings.Read "
    "https://graph.microsoft.com/User.Read offline_access"
)

PAGE_SIZE = 100


def _parse_graph_datetime(value: str) -> datetime:
    """Graph returns 7-digit fractions ("2024-01-01T10:00:00.0000000") without an offset."""
    raw = value.replace("Z", "")
    if "." in raw:
        head, fraction = raw.split(".", 1)
        raw = f"{head}.{fraction[:6]}"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _normalize_event(item: dict, calendar_id: str, tz_name: str) -> NormalizedEvent | None:
    if item.get("isCancelled"):
        return None
    if item.get("showAs") == "free":
        return None

    start_raw = (item.get("start") or {}).get("dateTime")
    end_raw = (item.get("end") or {}).get("dateTime")
    if not start_raw or not end_raw:
        return None

    is_all_day = bool(item.get("isAllDay"))
    if is_all_day:
        start, end = all_day_interval(
            date.fromisoformat(start_raw[:10]),
            date.fromisoformat(end_raw[:10]),
            tz_name,
        )
    else:
        start = _parse_graph_datetime(start_raw)
        end = _parse_graph_datetime(end_raw)
    if end <= start:
        return None

    location = (item.get("location") or {}).get("displayName") or None
    return NormalizedEvent(
        external_id=item["id"],
        calendar_id=calendar_id,
        title=item.get("subject") or "(no title)",
        start=start,
        end=end,
        is_all_day=is_all_day,
        location=location,
        description=item.get("bodyPreview") or None,
    )


class OutlookCalendarAdapter(HttpCalendarAdapter):
    platform = Platform.OUTLOOK
    platform_label = "Outlook"
    scopes = OUTLOOK_SCOPES

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(http_client, timeout=settings.http_timeout_seconds)
        defaults = self._default_credentials()
        self.client_id = client_id if client_id is not None else defaults[0]
        self.client_secret = client_secret if client_secret is not None else defaults[1]
        self.redirect_uri = redirect_uri if redirect_uri is not None else defaults[2]

    def _default_credentials(self) -> tuple[str, str, str]:
        return (
            settings.microsoft_client_id,
            settings.microsoft_client_secret,
            settings.microsoft_redirect_uri,
        )

    @staticmethod
    def _calendar_view_url(calendar_id: str) -> str:
        if calendar_id == "primary":
            return f"{GRAPH_BASE_URL}/me/calendar/calendarView"
        return f"{GRAPH_BASE_URL}/me/calendars/{quote(calendar_id, safe='')}/calendarView"

    async def list_events(
        self,
        credentials: ConnectionCredentials,
        calendar_id: str,
        window: DateRange,
    ) -> list[NormalizedEvent]:
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }
        url = self._calendar_view_url(calendar_id)
        params = {
            "startDateTime": window.start.isoformat(),
            "endDateTime": window.end.isoformat(),
            "$top": PAGE_SIZE,
        }

        events: list[NormalizedEvent] = []
        while url:
            response = await self._send("GET", url, params=params, headers=headers)
            raise_for_status(response, self.platform_label)
            payload = response.json()
            for item in payload.get("value", []):
                event = _normalize_event(item, calendar_id, credentials.timezone)
                if event is not None:
                    events.append(event)
            # nextLink already carries the query string
            url = payload.get("@odata.nextLink")
            params = None

        logger.info(f"Fetched {len(events)} {self.platform_label} events from {calendar_id}")
        return events

    async def list_calendars(self, credentials: ConnectionCredentials) -> list[RemoteCalendar]:
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        url = f"{GRAPH_BASE_URL}/me/calendars"
        params = {"$select": "id,name,isDefaultCalendar,canEdit", "$top": PAGE_SIZE}

        calendars: list[RemoteCalendar] = []
        while url:
            response = await self._send("GET", url, params=params, headers=headers)
            raise_for_status(response, self.platform_label)
            payload = response.json()
            for item in payload.get("value", []):
                calendars.append(RemoteCalendar(
                    id=item["id"],
                    name=item.get("name") or "Calendar",
                    is_primary=bool(item.get("isDefaultCalendar")),
                    can_write=item.get("canEdit", True),
                ))
            url = payload.get("@odata.nextLink")
            params = None

        calendars.sort(key=lambda c: not c.is_primary)
        return calendars

    async def _token_request(self, data: dict) -> dict:
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scopes,
            **data,
        }
        response = await self._send("POST", TOKEN_URL, data=payload)
        if response.status_code >= 500 or response.status_code == 429:
            raise RemoteUnavailable(f"{self.platform_label} token endpoint failed ({response.status_code})")
        if response.status_code >= 400:
            try:
                error = response.json().get("error", "")
            except ValueError:
                error = ""
            logger.error(f"{self.platform_label} token request rejected: {response.status_code} {error}")
            raise ReauthRequired(f"{self.platform_label} token request rejected ({error or response.status_code})")
        return response.json()

    async def refresh_token(self, refresh_token: str | None) -> TokenGrant:
        if not refresh_token:
            raise ReauthRequired(f"{self.platform_label} connection has no refresh token")
        body = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=expiry_from_seconds(body.get("expires_in")),
        )

    async def connect(self, auth_code: str, *, account: str | None = None) -> ConnectionGrant:
        body = await self._token_request({
            "grant_type": "authorization_code",
            "code": auth_code,
            "redirect_uri": self.redirect_uri,
        })
        access_token = body["access_token"]

        response = await self._send(
            "GET", f"{GRAPH_BASE_URL}/me",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        raise_for_status(response, self.platform_label)
        me = response.json()

        return ConnectionGrant(
            platform=self.platform,
            account_email=me.get("mail") or me.get("userPrincipalName") or "",
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=expiry_from_seconds(body.get("expires_in")),
            calendar_id="primary",
            calendar_name="Calendar",
        )

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        if not credentials.subscription_id:
            return
        try:
            response = await self._send(
                "DELETE",
                f"{GRAPH_BASE_URL}/subscriptions/{credentials.subscription_id}",
                headers={"Authorization": f"Bearer {credentials.access_token}"},
            )
        except RemoteUnavailable as e:
            logger.warning(f"Could not delete {self.platform_label} subscription: {e}")
            return
        if response.status_code == 404:
            return
        try:
            raise_for_status(response, self.platform_label)
        except (AuthExpired, RemoteUnavailable) as e:
            logger.warning(f"Could not delete {self.platform_label} subscription: {e}")


class TeamsCalendarAdapter(OutlookCalendarAdapter):
    platform = Platform.TEAMS
    platform_label = "Teams"
    scopes = TEAMS_SCOPES

    def _default_credentials(self) -> tuple[str, str, str]:
        return settings.teams_credentials
