from .tables import (
    ACTIVE_BOOKING_STATUSES,
    DEFAULT_ALLOWED_DURATIONS,
    AvailabilityTemplate,
    Base,
    Booking,
    BookingStatus,
    CalendarConnection,
    CalendarEvent,
    Customer,
    LocationSchedule,
    Platform,
    Provider,
    ProviderLocation,
    RecurrenceType,
    SyncStatus,
    TemplateAssignment,
    TimeSlot,
    metadata,
)

__all__ = [
    "ACTIVE_BOOKING_STATUSES",
    "DEFAULT_ALLOWED_DURATIONS",
    "AvailabilityTemplate",
    "Base",
    "Booking",
    "BookingStatus",
    "CalendarConnection",
    "CalendarEvent",
    "Customer",
    "LocationSchedule",
    "Platform",
    "Provider",
    "ProviderLocation",
    "RecurrenceType",
    "SyncStatus",
    "TemplateAssignment",
    "TimeSlot",
    "metadata",
]
