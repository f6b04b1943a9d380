from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from tutoring_booking.core.router_guard import enforce_rate_limit, require_actor, schedule_dispatch
from tutoring_booking.db import get_db
from tutoring_booking.schemas import (
    AttendanceMarkRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingRescheduleRequest,
)
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.booking_service import (
    cancel_booking,
    create_booking,
    get_booking,
    get_monthly_booking_status,
    list_bookings,
    mark_attendance,
    reschedule_booking,
)


router = APIRouter(prefix='/api/bookings', tags=['Bookings'])
logger = logging.getLogger(__name__)


@router.post('', status_code=201)
def create_booking_endpoint(
    payload: BookingCreateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request, actor, 'booking_create')
    result = create_booking(
        db,
        actor,
        slot_id=payload.slot_id,
        student_id=payload.student_id,
        idempotency_key=payload.idempotency_key,
    )
    if not result.get('replayed'):
        schedule_dispatch(request, background_tasks)
    return result


@router.get('')
def list_bookings_endpoint(
    student_id: int | None = Query(default=None),
    slot_id: int | None = Query(default=None),
    branch_id: int | None = Query(default=None),
    teacher_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {
        'items': list_bookings(
            db,
            actor,
            student_id=student_id,
            slot_id=slot_id,
            branch_id=branch_id,
            teacher_id=teacher_id,
            status=status,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
        )
    }


@router.get('/monthly-status')
def monthly_status_endpoint(
    student_id: int | None = Query(default=None),
    on_date: date | None = Query(default=None),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return get_monthly_booking_status(db, actor, student_id=student_id, on_date=on_date)


@router.get('/{booking_id}')
def get_booking_endpoint(booking_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return get_booking(db, actor, booking_id)


@router.post('/{booking_id}/cancel')
def cancel_booking_endpoint(
    booking_id: int,
    payload: BookingCancelRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request, actor, 'booking_cancel')
    result = cancel_booking(
        db,
        actor,
        booking_id,
        reason=payload.reason,
        on_behalf_of_student=payload.on_behalf_of_student,
        admin_override=payload.admin_override,
    )
    schedule_dispatch(request, background_tasks)
    return result


@router.post('/{booking_id}/reschedule')
def reschedule_booking_endpoint(
    booking_id: int,
    payload: BookingRescheduleRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request, actor, 'booking_reschedule')
    result = reschedule_booking(db, actor, booking_id, payload.new_slot_id)
    schedule_dispatch(request, background_tasks)
    return result


@router.post('/{booking_id}/attendance')
def mark_attendance_endpoint(
    booking_id: int,
    payload: AttendanceMarkRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return mark_attendance(db, actor, booking_id, attended=payload.attended)
