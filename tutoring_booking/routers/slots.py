from __future__ import annotations

from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from tutoring_booking.core.router_guard import require_actor, schedule_dispatch
from tutoring_booking.db import get_db
from tutoring_booking.schemas import SlotCapacityRequest, SlotCreateRequest, TeacherCancelRequest
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.availability_service import compute_availability
from tutoring_booking.services.booking_service import teacher_cancel_slot
from tutoring_booking.services.slot_service import create_slot, deactivate_slot, get_slot, update_slot_capacity


router = APIRouter(prefix='/api/slots', tags=['Slots'])


@router.get('/availability')
def availability_endpoint(
    branch_id: int | None = Query(default=None),
    teacher_id: int | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    include_full: bool = Query(default=False),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    rows = compute_availability(
        db,
        branch_id=branch_id,
        teacher_id=teacher_id,
        date_from=date_from,
        date_to=date_to,
        include_full=include_full and actor.is_staff,
    )
    return {'items': [row.as_dict() for row in rows]}


@router.post('', status_code=201)
def create_slot_endpoint(payload: SlotCreateRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return create_slot(
        db,
        actor,
        branch_id=payload.branch_id,
        slot_date=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        capacity=payload.capacity,
        teacher_id=payload.teacher_id,
    )


@router.get('/{slot_id}')
def get_slot_endpoint(slot_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return get_slot(db, slot_id)


@router.patch('/{slot_id}/capacity')
def update_capacity_endpoint(
    slot_id: int,
    payload: SlotCapacityRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = update_slot_capacity(db, actor, slot_id, capacity=payload.capacity)
    if result.get('waitlist_offer_entry_ids'):
        schedule_dispatch(request, background_tasks)
    return result


@router.post('/{slot_id}/deactivate')
def deactivate_slot_endpoint(slot_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return deactivate_slot(db, actor, slot_id)


@router.post('/{slot_id}/teacher-cancel')
def teacher_cancel_endpoint(
    slot_id: int,
    payload: TeacherCancelRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = teacher_cancel_slot(
        db,
        actor,
        slot_id,
        reason=payload.reason,
        issue_priority_grants=payload.issue_priority_grants,
    )
    schedule_dispatch(request, background_tasks)
    return result
