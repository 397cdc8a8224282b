# appointments/routers/bookings.py
# PATCH = 405, DELETE = 405; state changes go through reschedule/cancel

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_notifier, http_error
from ..errors import AppointmentsError
from ..models import Booking
from ..schemas.bookings import (
    BookingCancel,
    BookingCreate,
    BookingRead,
    BookingReschedule,
)
from ..services import booking_guard

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.get("/{id}", response_model=BookingRead)
def get_booking(id: str, provider_id: str, db: Session = Depends(get_db)):
    obj = db.get(Booking, id)
    if not obj or obj.provider_id != provider_id:
        raise HTTPException(status_code=404, detail="Not found")
    return obj


@router.post("", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: BookingCreate,
    db: Session = Depends(get_db),
    notify=Depends(get_notifier),
):
    try:
        return booking_guard.create_booking(db, data, notify=notify)
    except AppointmentsError as e:
        raise http_error(e)


@router.post("/{id}/reschedule", response_model=BookingRead)
def reschedule_booking(
    id: str,
    data: BookingReschedule,
    db: Session = Depends(get_db),
    notify=Depends(get_notifier),
):
    try:
        return booking_guard.reschedule_booking(db, id, data, notify=notify)
    except AppointmentsError as e:
        raise http_error(e)


@router.post("/{id}/cancel", response_model=BookingRead)
def cancel_booking(
    id: str,
    data: BookingCancel,
    db: Session = Depends(get_db),
    notify=Depends(get_notifier),
):
    try:
        return booking_guard.cancel_booking(db, data.provider_id, id, reason=data.reason, notify=notify)
    except AppointmentsError as e:
        raise http_error(e)


@router.patch("/{id}")
def patch_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )


@router.delete("/{id}")
def delete_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )
