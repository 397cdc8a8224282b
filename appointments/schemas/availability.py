# appointments/schemas/availability.py
"""
Pydantic schemas for the availability API.

Responses use camelCase keys (availableSlots, startTime, ...).
"""

from datetime import date as date_type
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..timeutils import time_str_to_minutes


class SlotRead(BaseModel):
    """A bookable slot in the provider's local time."""
    start_time: str  # "HH:MM"
    end_time: str
    day_of_week: int  # 0 = Sunday

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AvailabilityResponse(BaseModel):
    provider_id: str
    date: date_type
    duration: int
    available_slots: list[SlotRead]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AvailabilityCheckRequest(BaseModel):
    provider_id: str
    date: date_type
    start_time: str
    duration: int = Field(gt=0)
    location_id: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("start_time")
    @classmethod
    def check_start_time(cls, value: str) -> str:
        time_str_to_minutes(value)
        return value


class AvailabilityCheckResponse(BaseModel):
    is_available: bool

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
