"""
Provider location schedules.

A LocationSchedule says on which dates a provider works at a location:
- non-recurring: every day of [start_date, end_date], or only start_date
  when end_date is empty
- recurring: DAILY / WEEKLY every `recurrence_interval` days or weeks,
  BIWEEKLY every other week (times `recurrence_interval`), all
  counted from start_date, MONTHLY on days_of_week (optionally the n-th week
  of the month and/or a fixed month of the year)
"""

from datetime import date
from math import ceil

from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models import LocationSchedule, ProviderLocation, RecurrenceType
from ..timeutils import day_of_week


def schedule_matches(schedule: LocationSchedule, target_date: date) -> bool:
    if not schedule.is_active:
        return False
    if target_date < schedule.start_date:
        return False
    if schedule.end_date and target_date > schedule.end_date:
        return False

    if not schedule.is_recurring:
        if schedule.end_date:
            return True
        return target_date == schedule.start_date

    if schedule.recurrence_end_date and target_date > schedule.recurrence_end_date:
        return False

    days_since_start = (target_date - schedule.start_date).days
    interval = schedule.recurrence_interval or 1
    weekdays = schedule.days_of_week or []
    weekday = day_of_week(target_date)

    recurrence = schedule.recurrence_type
    if recurrence == RecurrenceType.DAILY:
        return days_since_start % interval == 0
    if recurrence == RecurrenceType.WEEKLY:
        return weekday in weekdays and (days_since_start // 7) % interval == 0
    if recurrence == RecurrenceType.BIWEEKLY:
        return weekday in weekdays and (days_since_start // 7) % (2 * interval) == 0
    if recurrence == RecurrenceType.MONTHLY:
        if schedule.month_of_year and target_date.month != schedule.month_of_year:
            return False
        if schedule.week_of_month and ceil(target_date.day / 7) != schedule.week_of_month:
            return False
        return weekday in weekdays
    return False


def is_location_active_on_date(
    db: Session,
    provider_id: str,
    location_id: str,
    target_date: date,
) -> bool:
    """True when any active schedule of the provider's location covers the date."""
    location = (
        db.query(ProviderLocation)
        .filter(ProviderLocation.id == location_id, ProviderLocation.provider_id == provider_id)
        .first()
    )
    if location is None:
        raise NotFound(f"Location {location_id} not found")
    if not location.is_active:
        return False

    schedules = (
        db.query(LocationSchedule)
        .filter(LocationSchedule.location_id == location_id, LocationSchedule.is_active.is_(True))
        .all()
    )
    return any(schedule_matches(schedule, target_date) for schedule in schedules)
