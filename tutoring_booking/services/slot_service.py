from __future__ import annotations

import logging
from datetime import date, time

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutoring_booking.core.errors import ConflictError, NotFoundError, ValidationError
from tutoring_booking.core.slot_lock import booking_locks, slot_key
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.models import Branch, Role, Slot
from tutoring_booking.services import booking_repository as repo
from tutoring_booking.services.access_scope_service import Actor, assert_branch_scope, assert_can_manage_slot, require_role
from tutoring_booking.services.audit_service import record_audit
from tutoring_booking.services.waiting_list_service import clear_waiting_list, offer_next_seat


logger = logging.getLogger(__name__)


def serialize_slot(slot: Slot, *, booked_count: int | None = None, is_blocked: bool | None = None) -> dict:
    payload = {
        'id': slot.id,
        'teacher_id': slot.teacher_id,
        'branch_id': slot.branch_id,
        'date': slot.date.isoformat(),
        'start_time': slot.start_time.strftime('%H:%M'),
        'end_time': slot.end_time.strftime('%H:%M'),
        'capacity': slot.capacity,
        'is_active': slot.is_active,
    }
    if booked_count is not None:
        payload['booked_count'] = booked_count
        payload['available_spots'] = max(0, int(slot.capacity) - booked_count)
    if is_blocked is not None:
        payload['is_blocked'] = is_blocked
    return payload


def get_slot(db: Session, slot_id: int) -> dict:
    slot = repo.find_slot(db, slot_id)
    if slot is None:
        raise NotFoundError('Slot not found')
    return serialize_slot(
        slot,
        booked_count=repo.count_bookings(db, slot.id),
        is_blocked=repo.find_blocked_slot(db, slot.id) is not None,
    )


def create_slot(
    db: Session,
    actor: Actor,
    *,
    branch_id: int,
    slot_date: date,
    start_time: time,
    end_time: time,
    capacity: int = 1,
    teacher_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require_role(actor, {Role.TEACHER.value, Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value})
    owner_id = actor.user_id if actor.role == Role.TEACHER.value else teacher_id
    if owner_id is None:
        raise ValidationError('teacher_id is required')
    if int(capacity) <= 0:
        raise ValidationError('capacity must be greater than zero')
    if end_time <= start_time:
        raise ValidationError('end_time must be after start_time')
    branch = db.get(Branch, int(branch_id))
    if branch is None or not branch.is_active:
        raise NotFoundError('Branch not found')
    assert_branch_scope(actor, branch.id, entity='Branch')
    teacher = repo.find_user(db, owner_id)
    if teacher is None or teacher.role != Role.TEACHER.value:
        raise NotFoundError('Teacher not found')

    slot = Slot(
        teacher_id=teacher.id,
        branch_id=branch.id,
        date=slot_date,
        start_time=start_time,
        end_time=end_time,
        capacity=int(capacity),
        is_active=True,
        created_at=time_provider.local_now(),
    )
    db.add(slot)
    try:
        db.flush()
        record_audit(db, actor, 'SLOT_CREATE', 'slot', slot.id, new_value=serialize_slot(slot), time_provider=time_provider)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError('Teacher already has a slot starting at this time') from exc
    db.refresh(slot)
    logger.info('slot_created slot_id=%s teacher_id=%s branch_id=%s', slot.id, slot.teacher_id, slot.branch_id)
    return serialize_slot(slot, booked_count=0)


def update_slot_capacity(
    db: Session,
    actor: Actor,
    slot_id: int,
    *,
    capacity: int,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Capacity is the only mutable slot field; it never drops below the seats already taken."""
    if int(capacity) <= 0:
        raise ValidationError('capacity must be greater than zero')
    slot = repo.find_slot(db, slot_id)
    if slot is None or not slot.is_active:
        raise NotFoundError('Slot not found')
    assert_can_manage_slot(actor, slot)

    with booking_locks(slot_key(slot.id)):
        try:
            db.refresh(slot, with_for_update=True)
            booked = repo.count_bookings(db, slot.id)
            if int(capacity) < booked:
                raise ValidationError(
                    'capacity cannot be lower than the current number of bookings',
                    detail={'booked_count': booked, 'capacity': int(capacity)},
                )
            old_capacity = int(slot.capacity)
            slot.capacity = int(capacity)
            db.flush()
            offered = []
            if repo.find_blocked_slot(db, slot.id) is None:
                now = time_provider.local_now()
                for _ in range(max(0, int(capacity) - max(old_capacity, booked))):
                    entry = offer_next_seat(db, slot.id, now=now, time_provider=time_provider)
                    if entry is None:
                        break
                    offered.append(entry.id)
            record_audit(
                db,
                actor,
                'SLOT_CAPACITY_UPDATE',
                'slot',
                slot.id,
                old_value={'capacity': old_capacity},
                new_value={'capacity': int(capacity)},
                time_provider=time_provider,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info('slot_capacity_updated slot_id=%s capacity=%s', slot.id, slot.capacity)
    return {**serialize_slot(slot, booked_count=booked), 'waitlist_offer_entry_ids': offered}


def deactivate_slot(
    db: Session,
    actor: Actor,
    slot_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Soft-delete an empty slot; slots with bookings go through the teacher cancellation flow."""
    slot = repo.find_slot(db, slot_id)
    if slot is None:
        raise NotFoundError('Slot not found')
    assert_can_manage_slot(actor, slot)

    with booking_locks(slot_key(slot.id)):
        try:
            db.refresh(slot, with_for_update=True)
            booked = repo.count_bookings(db, slot.id)
            if booked:
                raise ConflictError(
                    'Slot still has bookings; cancel it as the teacher instead',
                    detail={'booked_count': booked},
                )
            slot.is_active = False
            cleared = clear_waiting_list(db, slot.id)
            record_audit(
                db,
                actor,
                'SLOT_DEACTIVATE',
                'slot',
                slot.id,
                old_value={'is_active': True},
                new_value={'is_active': False, 'waitlist_cleared': cleared},
                time_provider=time_provider,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info('slot_deactivated slot_id=%s actor=%s', slot.id, actor.user_id)
    return serialize_slot(slot, booked_count=0)
