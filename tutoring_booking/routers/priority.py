from __future__ import annotations

from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from tutoring_booking.core.router_guard import enforce_rate_limit, require_actor, schedule_dispatch
from tutoring_booking.db import get_db
from tutoring_booking.schemas import PriorityConsumeRequest, PriorityGrantRequest
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.priority_reschedule_service import (
    check_priority_grant,
    consume_priority_grant,
    grant_priority_reschedule,
    replacement_pool,
)


router = APIRouter(prefix='/api/priority', tags=['Priority Reschedule'])


@router.get('/grant')
def check_grant_endpoint(
    student_id: int | None = Query(default=None),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {'grant': check_priority_grant(db, actor, student_id=student_id)}


@router.post('/grant', status_code=201)
def issue_grant_endpoint(payload: PriorityGrantRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return grant_priority_reschedule(
        db,
        actor,
        student_id=payload.student_id,
        original_slot_id=payload.original_slot_id,
        original_booking_id=payload.original_booking_id,
        branch_id=payload.branch_id,
        reason=payload.reason,
    )


@router.get('/replacement-slots')
def replacement_pool_endpoint(
    student_id: int | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {'items': replacement_pool(db, actor, student_id=student_id, date_from=date_from, date_to=date_to)}


@router.post('/consume', status_code=201)
def consume_grant_endpoint(
    payload: PriorityConsumeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request, actor, 'priority_consume')
    result = consume_priority_grant(db, actor, payload.new_slot_id, student_id=payload.student_id)
    schedule_dispatch(request, background_tasks)
    return result
