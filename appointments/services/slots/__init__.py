"""
Slot resolution.

Template time slots minus busy calendar events and bookings,
enumerated on a start-aligned grid.
"""

from .config import BookingConfig, get_booking_config
from .availability import get_available_slots, is_available, local_time_to_utc

__all__ = [
    "BookingConfig",
    "get_booking_config",
    "get_available_slots",
    "is_available",
    "local_time_to_utc",
]
