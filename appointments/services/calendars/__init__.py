from ...models import Platform
from .apple import AppleCalendarAdapter
from .base import (
    CalendarAdapter,
    ConnectionCredentials,
    ConnectionGrant,
    DateRange,
    NormalizedEvent,
    RemoteCalendar,
    TokenGrant,
)
from .google import GoogleCalendarAdapter
from .microsoft import OutlookCalendarAdapter, TeamsCalendarAdapter

AdapterRegistry = dict[Platform, CalendarAdapter]


def default_adapters() -> AdapterRegistry:
    return {
        Platform.GOOGLE: GoogleCalendarAdapter(),
        Platform.OUTLOOK: OutlookCalendarAdapter(),
        Platform.TEAMS: TeamsCalendarAdapter(),
        Platform.APPLE: AppleCalendarAdapter(),
    }


def get_adapter(adapters: AdapterRegistry, platform: Platform) -> CalendarAdapter:
    try:
        return adapters[Platform(platform)]
    except (KeyError, ValueError):
        raise ValueError(f"No calendar adapter for platform {platform!r}")


def credentials_for(connection, timezone: str = "UTC") -> ConnectionCredentials:
    """Detached snapshot of a CalendarConnection row."""
    return ConnectionCredentials(
        connection_id=connection.id,
        platform=connection.platform,
        account_email=connection.account_email,
        access_token=connection.access_token,
        refresh_token=connection.refresh_token,
        timezone=timezone,
        subscription_id=connection.subscription_id,
    )


__all__ = [
    "AdapterRegistry",
    "AppleCalendarAdapter",
    "CalendarAdapter",
    "ConnectionCredentials",
    "ConnectionGrant",
    "DateRange",
    "GoogleCalendarAdapter",
    "NormalizedEvent",
    "OutlookCalendarAdapter",
    "RemoteCalendar",
    "TeamsCalendarAdapter",
    "TokenGrant",
    "credentials_for",
    "default_adapters",
    "get_adapter",
]
