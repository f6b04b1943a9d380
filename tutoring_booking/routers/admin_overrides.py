from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from tutoring_booking.core.router_guard import require_actor, schedule_dispatch
from tutoring_booking.db import get_db
from tutoring_booking.schemas import (
    EmergencyRescheduleRequest,
    ForceBookingRequest,
    MonthlyBypassRequest,
    UnblockSlotRequest,
)
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.admin_override_service import (
    bypass_monthly_limit,
    emergency_reschedule,
    force_booking,
    unblock_slot,
)


router = APIRouter(prefix='/api/admin/overrides', tags=['Admin Overrides'])


@router.post('/force-booking', status_code=201)
def force_booking_endpoint(
    payload: ForceBookingRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = force_booking(db, actor, slot_id=payload.slot_id, student_id=payload.student_id, reason=payload.reason)
    schedule_dispatch(request, background_tasks)
    return result


@router.post('/slots/{slot_id}/unblock')
def unblock_slot_endpoint(
    slot_id: int,
    payload: UnblockSlotRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = unblock_slot(db, actor, slot_id=slot_id, reason=payload.reason)
    if result.get('waitlist_offer_entry_id'):
        schedule_dispatch(request, background_tasks)
    return result


@router.post('/monthly-bypass', status_code=201)
def monthly_bypass_endpoint(payload: MonthlyBypassRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return bypass_monthly_limit(db, actor, student_id=payload.student_id, reason=payload.reason)


@router.post('/emergency-reschedule')
def emergency_reschedule_endpoint(
    payload: EmergencyRescheduleRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = emergency_reschedule(
        db,
        actor,
        booking_id=payload.booking_id,
        new_slot_id=payload.new_slot_id,
        reason=payload.reason,
    )
    schedule_dispatch(request, background_tasks)
    return result
