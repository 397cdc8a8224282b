# appointments/schemas/calendar.py

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class SyncRequest(BaseModel):
    """Sync one connection or every active connection of a provider."""
    connection_id: Optional[str] = None
    provider_id: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self):
        if not self.connection_id and not self.provider_id:
            raise ValueError("connection_id or provider_id is required")
        return self


class CalendarSyncResultRead(BaseModel):
    calendar_id: str
    success: bool
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    error: Optional[str] = None


class SyncResultRead(BaseModel):
    connection_id: str
    success: bool
    status: str
    skipped: bool = False
    message: Optional[str] = None
    calendars: list[CalendarSyncResultRead] = []


class SyncResponse(BaseModel):
    success: bool
    results: list[SyncResultRead]


class TokenRefreshResultRead(BaseModel):
    connection_id: str
    success: bool
    error: Optional[str] = None


class TokenRefreshResponse(BaseModel):
    success: bool
    results: list[TokenRefreshResultRead]


class EventPolicyUpdate(BaseModel):
    provider_id: str
    allow_bookings: Optional[bool] = None
    max_bookings: Optional[int] = Field(default=None, ge=1)


class CalendarEventRead(BaseModel):
    id: str
    provider_id: str
    connection_id: str
    calendar_id: str
    external_event_id: str
    title: str
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    allow_bookings: bool
    max_bookings: int

    model_config = {"from_attributes": True}


class CalendarFlags(BaseModel):
    sync_enabled: Optional[bool] = None
    booking_enabled: Optional[bool] = None


class ConnectionSettingsUpdate(BaseModel):
    provider_id: str
    selected_calendars: Optional[list[str]] = None
    calendar_settings: Optional[dict[str, CalendarFlags]] = None
    sync_frequency: Optional[int] = Field(default=None, ge=1, le=1440)
    sync_events: Optional[bool] = None
    allow_bookings: Optional[bool] = None


class AvailableCalendarRead(BaseModel):
    id: str
    name: str
    is_primary: bool
    can_write: bool
    selected: bool
    sync_enabled: bool
    booking_enabled: bool


class AvailableCalendarsResponse(BaseModel):
    connection_id: str
    calendars: list[AvailableCalendarRead]


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str
