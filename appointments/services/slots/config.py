# appointments/services/slots/config.py
"""
Booking configuration for slot resolution.
"""

from dataclasses import dataclass
from functools import lru_cache

from ...config import settings


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for the availability resolver.

    Attributes:
        slot_step_minutes: Candidate start grid in minutes (15/30/60),
            aligned to the start of each free interval
    """
    slot_step_minutes: int = 15  # 15 / 30 / 60

    def __post_init__(self):
        """Validate configuration."""
        if self.slot_step_minutes not in (15, 30, 60):
            raise ValueError(f"slot_step_minutes must be 15, 30, or 60, got {self.slot_step_minutes}")


@lru_cache
def get_booking_config() -> BookingConfig:
    """Get booking configuration (singleton, read from settings)."""
    return BookingConfig(slot_step_minutes=settings.slot_step_minutes)
