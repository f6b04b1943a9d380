"""Storage access for the booking engine.

Every query the engine issues against slots, bookings and the three sparse
overlays (blocked slots, priority grants, monthly bypasses) goes through here.
Functions only flush; committing is the calling service's unit of work.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from tutoring_booking.models import (
    ACTIVE_BOOKING_STATUSES,
    BlockedSlot,
    Booking,
    MonthlyBypassGrant,
    PriorityRescheduleGrant,
    Slot,
    User,
)


logger = logging.getLogger(__name__)


def find_slot(db: Session, slot_id: int, *, for_update: bool = False) -> Slot | None:
    query = db.query(Slot).filter(Slot.id == int(slot_id))
    if for_update:
        query = query.with_for_update()
    return query.first()


def find_user(db: Session, user_id: int) -> User | None:
    return db.query(User).filter(User.id == int(user_id)).first()


def get_booking(db: Session, booking_id: int, *, for_update: bool = False) -> Booking | None:
    query = db.query(Booking).filter(Booking.id == int(booking_id))
    if for_update:
        query = query.with_for_update()
    return query.first()


def find_booking_by_idempotency_key(db: Session, idempotency_key: str) -> Booking | None:
    return db.query(Booking).filter(Booking.idempotency_key == idempotency_key).first()


def count_bookings(db: Session, slot_id: int, statuses: Iterable[str] = ACTIVE_BOOKING_STATUSES) -> int:
    return int(
        db.query(func.count(Booking.id))
        .filter(Booking.slot_id == int(slot_id), Booking.status.in_(tuple(statuses)))
        .scalar()
        or 0
    )


def count_bookings_by_slot(
    db: Session,
    slot_ids: Iterable[int],
    statuses: Iterable[str] = ACTIVE_BOOKING_STATUSES,
) -> dict[int, int]:
    ids = [int(slot_id) for slot_id in slot_ids]
    if not ids:
        return {}
    rows = (
        db.query(Booking.slot_id, func.count(Booking.id))
        .filter(Booking.slot_id.in_(ids), Booking.status.in_(tuple(statuses)))
        .group_by(Booking.slot_id)
        .all()
    )
    return {int(slot_id): int(count) for slot_id, count in rows}


def find_booking(
    db: Session,
    student_id: int,
    slot_id: int,
    statuses: Iterable[str] = ACTIVE_BOOKING_STATUSES,
    *,
    exclude_booking_id: int | None = None,
) -> Booking | None:
    query = db.query(Booking).filter(
        Booking.student_id == int(student_id),
        Booking.slot_id == int(slot_id),
        Booking.status.in_(tuple(statuses)),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != int(exclude_booking_id))
    return query.order_by(Booking.id.asc()).first()


def find_monthly_booking(
    db: Session,
    student_id: int,
    month_range: tuple[date, date],
    *,
    exclude_booking_id: int | None = None,
) -> Booking | None:
    month_start, month_end = month_range
    query = (
        db.query(Booking)
        .join(Slot, Slot.id == Booking.slot_id)
        .filter(
            Booking.student_id == int(student_id),
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Slot.date >= month_start,
            Slot.date <= month_end,
        )
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != int(exclude_booking_id))
    return query.order_by(Slot.date.asc(), Booking.id.asc()).first()


def insert_booking(
    db: Session,
    *,
    student_id: int,
    slot_id: int,
    actor_user_id: int,
    booked_at: datetime,
    idempotency_key: str | None = None,
) -> Booking:
    row = Booking(
        student_id=int(student_id),
        slot_id=int(slot_id),
        status=ACTIVE_BOOKING_STATUSES[0],
        booked_at=booked_at,
        idempotency_key=idempotency_key,
        created_by=int(actor_user_id),
    )
    db.add(row)
    db.flush()
    return row


def update_booking_status(
    db: Session,
    booking: Booking,
    status: str,
    *,
    actor_user_id: int,
    at: datetime,
    **fields,
) -> Booking:
    booking.status = status
    for key, value in fields.items():
        setattr(booking, key, value)
    booking.updated_by = int(actor_user_id)
    booking.updated_at = at
    db.flush()
    return booking


def reassign_booking_slot(db: Session, booking: Booking, new_slot_id: int, *, actor_user_id: int, at: datetime) -> Booking:
    booking.slot_id = int(new_slot_id)
    booking.updated_by = int(actor_user_id)
    booking.updated_at = at
    db.flush()
    return booking


def find_blocked_slot(db: Session, slot_id: int) -> BlockedSlot | None:
    return db.get(BlockedSlot, int(slot_id))


def upsert_blocked_slot(
    db: Session,
    slot_id: int,
    *,
    reason: str,
    blocked_by: int,
    original_booking_id: int | None,
    at: datetime,
) -> BlockedSlot:
    row = find_blocked_slot(db, slot_id)
    if row is None:
        row = BlockedSlot(slot_id=int(slot_id))
        db.add(row)
    row.reason = reason
    row.blocked_by = int(blocked_by)
    row.original_booking_id = original_booking_id
    row.blocked_at = at
    db.flush()
    return row


def delete_blocked_slot(db: Session, slot_id: int, *, actor_user_id: int) -> bool:
    result = db.execute(delete(BlockedSlot).where(BlockedSlot.slot_id == int(slot_id)))
    if result.rowcount:
        logger.info('blocked_slot_deleted slot_id=%s actor_user_id=%s', slot_id, actor_user_id)
    return bool(result.rowcount)


def find_priority_grant(db: Session, student_id: int) -> PriorityRescheduleGrant | None:
    return db.get(PriorityRescheduleGrant, int(student_id))


def upsert_priority_grant(
    db: Session,
    student_id: int,
    *,
    original_slot_id: int,
    original_booking_id: int,
    branch_id: int,
    reason: str,
    created_at: datetime,
    expires_at: datetime,
    actor_user_id: int,
) -> PriorityRescheduleGrant:
    row = find_priority_grant(db, student_id)
    if row is None:
        row = PriorityRescheduleGrant(student_id=int(student_id))
        db.add(row)
    row.original_slot_id = int(original_slot_id)
    row.original_booking_id = int(original_booking_id)
    row.branch_id = int(branch_id)
    row.reason = reason
    row.created_at = created_at
    row.expires_at = expires_at
    row.granted_by = int(actor_user_id)
    db.flush()
    return row


def delete_priority_grant(
    db: Session,
    student_id: int,
    *,
    actor_user_id: int,
    valid_at: datetime | None = None,
) -> bool:
    """Single conditional DELETE; with ``valid_at`` only an unexpired grant is removed."""
    statement = delete(PriorityRescheduleGrant).where(PriorityRescheduleGrant.student_id == int(student_id))
    if valid_at is not None:
        statement = statement.where(PriorityRescheduleGrant.expires_at >= valid_at)
    result = db.execute(statement)
    if result.rowcount:
        logger.info('priority_grant_deleted student_id=%s actor_user_id=%s', student_id, actor_user_id)
    return bool(result.rowcount)


def find_monthly_bypass(db: Session, student_id: int) -> MonthlyBypassGrant | None:
    return db.get(MonthlyBypassGrant, int(student_id))


def upsert_monthly_bypass(
    db: Session,
    student_id: int,
    *,
    reason: str,
    granted_by: int,
    granted_at: datetime,
    expires_at: datetime,
) -> MonthlyBypassGrant:
    row = find_monthly_bypass(db, student_id)
    if row is None:
        row = MonthlyBypassGrant(student_id=int(student_id))
        db.add(row)
    row.reason = reason
    row.granted_by = int(granted_by)
    row.granted_at = granted_at
    row.expires_at = expires_at
    db.flush()
    return row


def delete_monthly_bypass(db: Session, student_id: int, *, actor_user_id: int) -> bool:
    result = db.execute(delete(MonthlyBypassGrant).where(MonthlyBypassGrant.student_id == int(student_id)))
    if result.rowcount:
        logger.info('monthly_bypass_deleted student_id=%s actor_user_id=%s', student_id, actor_user_id)
    return bool(result.rowcount)
