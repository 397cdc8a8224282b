"""
appointments/services/templates.py

Availability template engine.

Resolution for a provider and date:
1. the most recently created assignment whose [start_date, end_date] covers
   the date (open end_date = unbounded)
2. otherwise the provider's default template
3. otherwise the date is closed

Time slots are "HH:MM" in the provider's local time, dayOfWeek 0 = Sunday,
and never cross midnight.
"""

import logging
from datetime import date

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..errors import InvalidInput, NotFound
from ..models import AvailabilityTemplate, Provider, TemplateAssignment, TimeSlot
from ..timeutils import day_of_week, time_str_to_minutes

logger = logging.getLogger(__name__)


def get_effective_template_for_date(
    db: Session,
    provider_id: str,
    target_date: date,
) -> AvailabilityTemplate | None:
    """Template governing target_date, or None when the provider is closed."""
    assignment = (
        db.query(TemplateAssignment)
        .join(AvailabilityTemplate, AvailabilityTemplate.id == TemplateAssignment.template_id)
        .filter(
            TemplateAssignment.provider_id == provider_id,
            AvailabilityTemplate.provider_id == provider_id,
            AvailabilityTemplate.is_active.is_(True),
            TemplateAssignment.start_date <= target_date,
            or_(TemplateAssignment.end_date.is_(None), TemplateAssignment.end_date >= target_date),
        )
        .order_by(TemplateAssignment.created_at.desc(), TemplateAssignment.id.desc())
        .first()
    )
    if assignment is not None:
        return assignment.template

    return (
        db.query(AvailabilityTemplate)
        .filter(
            AvailabilityTemplate.provider_id == provider_id,
            AvailabilityTemplate.is_default.is_(True),
            AvailabilityTemplate.is_active.is_(True),
        )
        .first()
    )


def get_effective_availability_for_date(
    db: Session,
    template: AvailabilityTemplate | str | None,
    target_date: date,
) -> list[TimeSlot]:
    """Enabled time slots of the template for target_date's weekday, in order."""
    if template is None:
        return []
    template_id = template if isinstance(template, str) else template.id

    return (
        db.query(TimeSlot)
        .filter(
            TimeSlot.template_id == template_id,
            TimeSlot.day_of_week == day_of_week(target_date),
            TimeSlot.is_enabled.is_(True),
        )
        .order_by(TimeSlot.start_time)
        .all()
    )


# ── Template management ──────────────────────────────────────────────────


def _validate_slot(slot: dict) -> tuple[int, str, str, bool]:
    try:
        day = int(slot["day_of_week"])
        start = slot["start_time"]
        end = slot["end_time"]
    except (KeyError, TypeError, ValueError):
        raise InvalidInput("Time slot needs day_of_week, start_time and end_time")
    if not 0 <= day <= 6:
        raise InvalidInput(f"day_of_week must be 0-6, got {day}")
    try:
        start_min = time_str_to_minutes(start)
        end_min = time_str_to_minutes(end)
    except ValueError as e:
        raise InvalidInput(str(e))
    if end_min <= start_min:
        raise InvalidInput(f"Time slot end {end} must be after start {start}")
    return day, start, end, bool(slot.get("is_enabled", True))


def create_template(
    db: Session,
    provider_id: str,
    name: str,
    time_slots: list[dict],
    is_default: bool = False,
) -> AvailabilityTemplate:
    if db.get(Provider, provider_id) is None:
        raise NotFound(f"Provider {provider_id} not found")
    validated = [_validate_slot(slot) for slot in time_slots]

    template = AvailabilityTemplate(provider_id=provider_id, name=name, is_default=False)
    db.add(template)
    db.flush()
    _replace_slots(db, template, validated)
    if is_default:
        _make_default(db, template)
    db.commit()
    db.refresh(template)
    logger.info(f"Template {template.id} created for provider {provider_id}")
    return template


def _get_template(db: Session, provider_id: str, template_id: str) -> AvailabilityTemplate:
    template = (
        db.query(AvailabilityTemplate)
        .filter(AvailabilityTemplate.id == template_id, AvailabilityTemplate.provider_id == provider_id)
        .populate_existing()
        .first()
    )
    if template is None:
        raise NotFound(f"Template {template_id} not found")
    return template


def _replace_slots(db: Session, template: AvailabilityTemplate, validated: list[tuple]) -> None:
    db.query(TimeSlot).filter(TimeSlot.template_id == template.id).delete(synchronize_session=False)
    for day, start, end, enabled in validated:
        db.add(TimeSlot(
            template_id=template.id,
            day_of_week=day,
            start_time=start,
            end_time=end,
            is_enabled=enabled,
        ))


def replace_time_slots(
    db: Session,
    provider_id: str,
    template_id: str,
    time_slots: list[dict],
) -> AvailabilityTemplate:
    """Editing a template replaces its whole TimeSlot set."""
    template = _get_template(db, provider_id, template_id)
    _replace_slots(db, template, [_validate_slot(slot) for slot in time_slots])
    db.commit()
    db.expire(template, ["time_slots"])
    return template


def _make_default(db: Session, template: AvailabilityTemplate) -> None:
    db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.provider_id == template.provider_id,
        AvailabilityTemplate.id != template.id,
        AvailabilityTemplate.is_default.is_(True),
    ).update({AvailabilityTemplate.is_default: False}, synchronize_session="fetch")
    template.is_default = True


def set_default_template(db: Session, provider_id: str, template_id: str) -> AvailabilityTemplate:
    """Only one template per provider is the default."""
    template = _get_template(db, provider_id, template_id)
    _make_default(db, template)
    db.commit()
    return template


def create_assignment(
    db: Session,
    provider_id: str,
    template_id: str,
    start_date: date,
    end_date: date | None = None,
) -> TemplateAssignment:
    _get_template(db, provider_id, template_id)
    if end_date is not None and end_date < start_date:
        raise InvalidInput("Assignment end_date must not be before start_date")

    assignment = TemplateAssignment(
        provider_id=provider_id,
        template_id=template_id,
        start_date=start_date,
        end_date=end_date,
    )
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    return assignment
