from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from tutoring_booking.core.slot_lock import booking_locks, slot_key
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.models import Role, WaitingListEntry
from tutoring_booking.services import booking_repository as repo
from tutoring_booking.services.access_scope_service import Actor, assert_can_act_for_student, assert_can_manage_slot
from tutoring_booking.services.notification_service import EVENT_WAITLIST_OFFER, enqueue_notification
from tutoring_booking.services.rule_engine import DUPLICATE_BOOKING, PAST_SLOT_BOOKING


logger = logging.getLogger(__name__)


def _serialize(entry: WaitingListEntry, *, rank: int | None = None) -> dict:
    return {
        'id': entry.id,
        'student_id': entry.student_id,
        'slot_id': entry.slot_id,
        'position': rank if rank is not None else entry.position,
        'created_at': entry.created_at.isoformat(),
        'expires_at': entry.expires_at.isoformat(),
        'offered_at': entry.offered_at.isoformat() if entry.offered_at else None,
    }


def _live_entries(db: Session, slot_id: int, now: datetime) -> list[WaitingListEntry]:
    return (
        db.query(WaitingListEntry)
        .filter(WaitingListEntry.slot_id == int(slot_id), WaitingListEntry.expires_at >= now)
        .order_by(WaitingListEntry.position.asc(), WaitingListEntry.id.asc())
        .all()
    )


def _resolve_student_id(actor: Actor, student_id: int | None) -> int:
    if actor.is_student:
        return actor.user_id
    if student_id is None:
        raise ValidationError('student_id is required when staff act for a student')
    return int(student_id)


def join_waiting_list(
    db: Session,
    actor: Actor,
    slot_id: int,
    *,
    student_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    target_student_id = _resolve_student_id(actor, student_id)
    student = repo.find_user(db, target_student_id)
    if student is None or student.role != Role.STUDENT.value:
        raise NotFoundError('Student not found')
    assert_can_act_for_student(actor, student.id, student.branch_id)

    with booking_locks(slot_key(slot_id)):
        try:
            slot = repo.find_slot(db, slot_id, for_update=True)
            if slot is None or not slot.is_active:
                raise NotFoundError('Slot not found')
            now = time_provider.local_now()
            if slot.starts_at < now:
                raise BusinessRuleError(PAST_SLOT_BOOKING, 'Cannot join the waiting list of a past slot')
            if repo.find_booking(db, student.id, slot.id) is not None:
                raise BusinessRuleError(DUPLICATE_BOOKING, 'Student already has a booking for this slot')
            if repo.count_bookings(db, slot.id) < int(slot.capacity) and repo.find_blocked_slot(db, slot.id) is None:
                raise ValidationError('Slot has open seats, book it directly')

            existing = (
                db.query(WaitingListEntry)
                .filter(WaitingListEntry.slot_id == slot.id, WaitingListEntry.student_id == student.id)
                .first()
            )
            if existing is not None:
                if existing.expires_at >= now:
                    raise ConflictError('Student is already on the waiting list for this slot')
                db.delete(existing)
                db.flush()

            last_position = (
                db.query(func.max(WaitingListEntry.position)).filter(WaitingListEntry.slot_id == slot.id).scalar() or 0
            )
            entry = WaitingListEntry(
                student_id=student.id,
                slot_id=slot.id,
                position=int(last_position) + 1,
                created_at=now,
                expires_at=now + timedelta(hours=settings.waitlist_expiry_hours),
            )
            db.add(entry)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError('Student is already on the waiting list for this slot') from exc
        except Exception:
            db.rollback()
            raise
    db.refresh(entry)
    rank = get_waiting_position(db, student.id, slot.id, time_provider=time_provider)
    logger.info('waitlist_joined slot_id=%s student_id=%s position=%s', slot.id, student.id, rank)
    return _serialize(entry, rank=rank)


def leave_waiting_list(db: Session, actor: Actor, slot_id: int, *, student_id: int | None = None) -> bool:
    target_student_id = _resolve_student_id(actor, student_id)
    student = repo.find_user(db, target_student_id)
    if student is None:
        raise NotFoundError('Student not found')
    assert_can_act_for_student(actor, student.id, student.branch_id)
    removed = discard_waiting_entry(db, student.id, slot_id)
    if not removed:
        raise NotFoundError('Waiting list entry not found')
    db.commit()
    logger.info('waitlist_left slot_id=%s student_id=%s', slot_id, student.id)
    return True


def list_waiting_list(
    db: Session,
    actor: Actor,
    slot_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> list[dict]:
    slot = repo.find_slot(db, slot_id)
    if slot is None:
        raise NotFoundError('Slot not found')
    assert_can_manage_slot(actor, slot)
    entries = _live_entries(db, slot.id, time_provider.local_now())
    return [_serialize(entry, rank=index) for index, entry in enumerate(entries, start=1)]


def get_waiting_position(
    db: Session,
    student_id: int,
    slot_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> int | None:
    """1-based rank among unexpired entries, or None when the student is not waiting."""
    for index, entry in enumerate(_live_entries(db, slot_id, time_provider.local_now()), start=1):
        if int(entry.student_id) == int(student_id):
            return index
    return None


def offer_next_seat(
    db: Session,
    slot_id: int,
    *,
    now: datetime,
    time_provider: TimeProvider = default_time_provider,
) -> WaitingListEntry | None:
    """Offer a freed seat to the first unexpired, not yet offered entry. Flush only."""
    entry = (
        db.query(WaitingListEntry)
        .filter(
            WaitingListEntry.slot_id == int(slot_id),
            WaitingListEntry.expires_at >= now,
            WaitingListEntry.offered_at.is_(None),
        )
        .order_by(WaitingListEntry.position.asc(), WaitingListEntry.id.asc())
        .first()
    )
    if entry is None:
        return None
    entry.offered_at = now
    db.flush()
    enqueue_notification(
        db,
        EVENT_WAITLIST_OFFER,
        slot_id=entry.slot_id,
        waiting_entry_id=entry.id,
        reason='Seat available',
        time_provider=time_provider,
    )
    logger.info('waitlist_offer slot_id=%s entry_id=%s student_id=%s', entry.slot_id, entry.id, entry.student_id)
    return entry


def discard_waiting_entry(db: Session, student_id: int, slot_id: int) -> bool:
    result = db.execute(
        delete(WaitingListEntry).where(
            WaitingListEntry.student_id == int(student_id),
            WaitingListEntry.slot_id == int(slot_id),
        )
    )
    return bool(result.rowcount)


def clear_waiting_list(db: Session, slot_id: int) -> int:
    result = db.execute(delete(WaitingListEntry).where(WaitingListEntry.slot_id == int(slot_id)))
    return int(result.rowcount or 0)


def delete_expired_waiting_entries(db: Session, now: datetime) -> int:
    result = db.execute(delete(WaitingListEntry).where(WaitingListEntry.expires_at < now))
    return int(result.rowcount or 0)
