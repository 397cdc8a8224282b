# appointments/schemas/bookings.py

from datetime import date as date_type, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models import BookingStatus
from ..timeutils import time_str_to_minutes


class BookingCreate(BaseModel):
    """
    Either calendar_event_id (book a synced appointment event) or
    provider_id + date + start_time + duration (book a template slot).
    """
    calendar_event_id: Optional[str] = None

    provider_id: Optional[str] = None
    date: Optional[date_type] = None
    start_time: Optional[str] = None  # "HH:MM", provider-local
    duration: Optional[int] = Field(default=None, gt=0)
    location_id: Optional[str] = None

    customer_email: str = Field(min_length=3)
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    customer_phone: Optional[str] = None

    service_type: str = Field(min_length=1)
    notes: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def check_start_time(cls, value):
        if value is not None:
            time_str_to_minutes(value)
        return value

    @field_validator("customer_email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("customer_email must be an e-mail address")
        return value

    @model_validator(mode="after")
    def check_target(self):
        if self.calendar_event_id:
            return self
        if not (self.provider_id and self.date and self.start_time and self.duration):
            raise ValueError(
                "calendar_event_id or provider_id, date, start_time and duration are required"
            )
        return self


class BookingReschedule(BaseModel):
    provider_id: str
    date: date_type
    start_time: str
    duration: Optional[int] = Field(default=None, gt=0)

    @field_validator("start_time")
    @classmethod
    def check_start_time(cls, value):
        if value is not None:
            time_str_to_minutes(value)
        return value


class BookingCancel(BaseModel):
    provider_id: str
    reason: Optional[str] = None


class BookingRead(BaseModel):
    id: str

    customer_id: str
    provider_id: str
    calendar_event_id: Optional[str] = None

    scheduled_at: datetime
    duration: int

    status: BookingStatus
    service_type: str
    notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
