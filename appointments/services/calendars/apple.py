"""
Apple iCloud calendars over CalDAV.

Apple has no OAuth: a connection stores the Apple ID as account_email and an
app-specific password as access_token. There is nothing to refresh, so a
rejected password always ends in ReauthRequired.
"""

import logging
from datetime import date, datetime, timezone
from urllib.parse import urljoin
from xml.etree import ElementTree

import httpx
import vobject

from ...config import settings
from ...errors import ReauthRequired, RemoteUnavailable
from ...models import Platform
from ...timeutils import get_zone
from .base import (
    ConnectionCredentials,
    ConnectionGrant,
    DateRange,
    HttpCalendarAdapter,
    NormalizedEvent,
    RemoteCalendar,
    TokenGrant,
    all_day_interval,
    raise_for_status,
)

logger = logging.getLogger(__name__)

NS = {"d": "DAV:", "c": "urn:ietf:params:xml:ns:caldav"}

PROPFIND_PRINCIPAL = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:current-user-principal/></d:prop>
</d:propfind>"""

PROPFIND_HOME_SET = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop><c:calendar-home-set/></d:prop>
</d:propfind>"""

PROPFIND_CALENDARS = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:resourcetype/><d:displayname/><d:current-user-privilege-set/></d:prop>
</d:propfind>"""

CALENDAR_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data><c:expand start="{start}" end="{end}"/></c:calendar-data>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def _caldav_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


# ── iCalendar parsing ────────────────────────────────────────────────────


def _tzid(prop) -> str | None:
    # vobject moves TZID aside once the value is converted
    for key in ("TZID", "X-VOBJ-ORIGINAL-TZID"):
        values = prop.params.get(key)
        if values:
            value = values[0]
            return value[0] if isinstance(value, list) else value
    return None


def _instant(prop, fallback_tz: str) -> datetime | date:
    value = prop.value
    if not isinstance(value, datetime):
        return value
    tzid = _tzid(prop)
    if tzid:
        # wall-clock time in the named zone
        return value.replace(tzinfo=get_zone(tzid)).astimezone(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=get_zone(fallback_tz)).astimezone(timezone.utc)
    return value.astimezone(timezone.utc)


def _text(component, name: str) -> str | None:
    if not hasattr(component, name):
        return None
    return str(getattr(component, name).value).strip() or None


def parse_vevents(ics: str, calendar_id: str, tz_name: str) -> list[NormalizedEvent]:
    """Extract busy VEVENTs from an iCalendar document."""
    try:
        calendars = list(vobject.readComponents(ics))
    except vobject.base.ParseError as e:
        logger.warning(f"Skipping unparseable calendar data in {calendar_id}: {e}")
        return []

    events: list[NormalizedEvent] = []
    for calendar in calendars:
        for vevent in getattr(calendar, "vevent_list", []):
            event = _vevent_to_event(vevent, calendar_id, tz_name)
            if event is not None:
                events.append(event)
    return events


def _vevent_to_event(vevent, calendar_id: str, tz_name: str) -> NormalizedEvent | None:
    uid = _text(vevent, "uid")
    if uid is None or not hasattr(vevent, "dtstart"):
        return None
    if (_text(vevent, "status") or "").upper() == "CANCELLED":
        return None
    if (_text(vevent, "transp") or "").upper() == "TRANSPARENT":
        return None

    start = _instant(vevent.dtstart, tz_name)
    end = None
    if hasattr(vevent, "dtend"):
        end = _instant(vevent.dtend, tz_name)
    elif hasattr(vevent, "duration"):
        end = start + vevent.duration.value

    is_all_day = not isinstance(start, datetime)
    if is_all_day:
        start, end = all_day_interval(start, end if isinstance(end, date) else None, tz_name)
    if end is None or end <= start:
        return None

    external_id = uid
    if hasattr(vevent, "recurrence_id"):
        recurrence = _instant(vevent.recurrence_id, tz_name)
        if isinstance(recurrence, datetime):
            external_id = f"{uid}_{_caldav_timestamp(recurrence)}"
        else:
            external_id = f"{uid}_{recurrence:%Y%m%d}"

    return NormalizedEvent(
        external_id=external_id,
        calendar_id=calendar_id,
        title=_text(vevent, "summary") or "(no title)",
        start=start,
        end=end,
        is_all_day=is_all_day,
        location=_text(vevent, "location"),
        description=_text(vevent, "description"),
    )


# ── Adapter ──────────────────────────────────────────────────────────────


class AppleCalendarAdapter(HttpCalendarAdapter):
    platform = Platform.APPLE
    platform_label = "Apple"
    supports_webhooks = False

    def __init__(self, base_url: str | None = None, http_client: httpx.AsyncClient | None = None):
        super().__init__(http_client, timeout=settings.http_timeout_seconds)
        self.base_url = base_url or settings.apple_caldav_url

    def _url(self, href: str) -> str:
        return urljoin(self.base_url.rstrip("/") + "/", href)

    async def _dav(self, method: str, href: str, body: str, depth: str, auth: httpx.BasicAuth) -> ElementTree.Element:
        response = await self._send(
            method,
            self._url(href),
            content=body.encode("utf-8"),
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": depth},
            auth=auth,
        )
        raise_for_status(response, self.platform_label)
        try:
            return ElementTree.fromstring(response.content)
        except ElementTree.ParseError as e:
            raise RemoteUnavailable(f"Apple CalDAV returned malformed XML: {e}") from e

    async def list_events(
        self,
        credentials: ConnectionCredentials,
        calendar_id: str,
        window: DateRange,
    ) -> list[NormalizedEvent]:
        auth = httpx.BasicAuth(credentials.account_email, credentials.access_token)
        body = CALENDAR_QUERY.format(
            start=_caldav_timestamp(window.start),
            end=_caldav_timestamp(window.end),
        )
        root = await self._dav("REPORT", calendar_id, body, "1", auth)

        events: list[NormalizedEvent] = []
        for node in root.iterfind(".//c:calendar-data", NS):
            if node.text:
                events.extend(parse_vevents(node.text, calendar_id, credentials.timezone))

        logger.info(f"Fetched {len(events)} Apple events from {calendar_id}")
        return events

    async def _discover_calendars(self, auth: httpx.BasicAuth) -> list[RemoteCalendar]:
        """principal -> calendar home -> calendar collections; the first one is primary."""
        root = await self._dav("PROPFIND", "/", PROPFIND_PRINCIPAL, "0", auth)
        principal = root.findtext(".//d:current-user-principal/d:href", namespaces=NS)
        if not principal:
            raise ReauthRequired("Apple CalDAV did not return a principal")

        root = await self._dav("PROPFIND", principal, PROPFIND_HOME_SET, "0", auth)
        home = root.findtext(".//c:calendar-home-set/d:href", namespaces=NS)
        if not home:
            raise ReauthRequired("Apple CalDAV did not return a calendar home")

        root = await self._dav("PROPFIND", home, PROPFIND_CALENDARS, "1", auth)
        calendars: list[RemoteCalendar] = []
        for response in root.iterfind("d:response", NS):
            if response.find(".//d:resourcetype/c:calendar", NS) is None:
                continue
            href = response.findtext("d:href", namespaces=NS)
            if not href:
                continue
            privileges = response.find(".//d:current-user-privilege-set", NS)
            # No privilege set reported: assume the owner's calendar
            writable = privileges is None or any(
                privileges.find(f".//d:{name}", NS) is not None for name in ("write", "all")
            )
            calendars.append(RemoteCalendar(
                id=href,
                name=response.findtext(".//d:displayname", namespaces=NS) or href,
                is_primary=not calendars,
                can_write=writable,
            ))
        return calendars

    async def list_calendars(self, credentials: ConnectionCredentials) -> list[RemoteCalendar]:
        auth = httpx.BasicAuth(credentials.account_email, credentials.access_token)
        return await self._discover_calendars(auth)

    async def connect(self, auth_code: str, *, account: str | None = None) -> ConnectionGrant:
        """auth_code is the app-specific password, account the Apple ID."""
        if not account:
            raise ReauthRequired("Apple ID is required to connect an Apple calendar")

        calendars = await self._discover_calendars(httpx.BasicAuth(account, auth_code))
        if not calendars:
            raise ReauthRequired("No calendars found for this Apple ID")

        primary = calendars[0]
        return ConnectionGrant(
            platform=Platform.APPLE,
            account_email=account,
            access_token=auth_code,
            calendar_id=primary.id,
            calendar_name=primary.name,
            calendars=[c.id for c in calendars[1:]],
        )

    async def refresh_token(self, refresh_token: str | None) -> TokenGrant:
        raise ReauthRequired("Apple app-specific password was rejected; reconnect the calendar")
