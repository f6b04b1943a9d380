from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tutoring_booking.core.errors import ValidationError
from tutoring_booking.core.router_guard import require_actor
from tutoring_booking.db import get_db
from tutoring_booking.schemas import WaitingListRequest
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.waiting_list_service import (
    get_waiting_position,
    join_waiting_list,
    leave_waiting_list,
    list_waiting_list,
)


router = APIRouter(prefix='/api/waitlist', tags=['Waiting List'])


@router.post('', status_code=201)
def join_endpoint(payload: WaitingListRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return join_waiting_list(db, actor, payload.slot_id, student_id=payload.student_id)


@router.post('/leave')
def leave_endpoint(payload: WaitingListRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return {'removed': leave_waiting_list(db, actor, payload.slot_id, student_id=payload.student_id)}


@router.get('/slots/{slot_id}')
def list_endpoint(slot_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return {'items': list_waiting_list(db, actor, slot_id)}


@router.get('/slots/{slot_id}/position')
def position_endpoint(
    slot_id: int,
    student_id: int | None = Query(default=None),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    if actor.is_student:
        target = actor.user_id
    elif student_id is None:
        raise ValidationError('student_id is required when staff look up a position')
    else:
        target = student_id
    return {'slot_id': slot_id, 'student_id': target, 'position': get_waiting_position(db, target, slot_id)}
