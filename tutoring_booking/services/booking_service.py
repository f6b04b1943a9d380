"""Booking lifecycle.

CONFIRMED is the only state with outgoing transitions (to CANCELLED, COMPLETED
or NO_SHOW). Every mutating operation runs under the per-slot/per-student lock
set, re-reads the rows it changes inside that lock, stages its audit row and
outbox notification in the same transaction and commits once.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import NoReturn

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.errors import (
    AuthorizationError,
    BusinessRuleError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tutoring_booking.core.slot_lock import booking_locks, slot_key, student_key
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.metrics import record_booking_event, timed_service
from tutoring_booking.models import Booking, BookingStatus, Role, Slot, User
from tutoring_booking.services import booking_repository as repo
from tutoring_booking.services.access_scope_service import (
    Actor,
    assert_branch_scope,
    assert_can_act_for_student,
    assert_can_manage_slot,
    assert_can_view_booking,
    require_role,
)
from tutoring_booking.services.admission_context_service import build_admission_context, monthly_bypass_active
from tutoring_booking.services.audit_service import record_audit
from tutoring_booking.services.notification_service import (
    EVENT_BOOKING_CANCELLED,
    EVENT_BOOKING_CONFIRMED,
    EVENT_TEACHER_CANCELLATION,
    enqueue_notification,
)
from tutoring_booking.services.observability_counters import record_observability_event
from tutoring_booking.services.rule_engine import (
    CREATE_BOOKING_RULES,
    INVALID_BOOKING_STATUS,
    CancellationContext,
    RuleResult,
    cancellation_window,
    evaluate,
    month_range,
)
from tutoring_booking.services.system_config_service import SystemConfig, get_system_config
from tutoring_booking.services.waiting_list_service import clear_waiting_list, discard_waiting_entry, offer_next_seat


logger = logging.getLogger(__name__)

LATE_CANCELLATION_REASON = 'Late cancellation'
BOOKING_ROLES = {Role.STUDENT.value, Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value}


def serialize_booking(booking: Booking, slot: Slot | None = None) -> dict:
    slot = slot or booking.slot
    payload = {
        'id': booking.id,
        'student_id': booking.student_id,
        'slot_id': booking.slot_id,
        'status': booking.status,
        'booked_at': booking.booked_at.isoformat() if booking.booked_at else None,
        'cancelled_at': booking.cancelled_at.isoformat() if booking.cancelled_at else None,
        'cancellation_reason': booking.cancellation_reason,
        'attended': booking.attended,
    }
    if slot is not None:
        payload.update(
            {
                'branch_id': slot.branch_id,
                'teacher_id': slot.teacher_id,
                'slot_date': slot.date.isoformat(),
                'start_time': slot.start_time.strftime('%H:%M'),
                'end_time': slot.end_time.strftime('%H:%M'),
            }
        )
    return payload


def reject(result: RuleResult, *, operation: str, actor: Actor, **context) -> NoReturn:
    """Turn a failed rule into the caller-facing error, logging and counting it on the way."""
    kind = str(result.kind)
    record_observability_event(f'business_rule_violation_{kind.lower()}')
    record_booking_event('rule_violation')
    logger.warning(
        'business_rule_violation',
        extra={'operation': operation, 'rule_kind': kind, 'actor_user_id': actor.user_id, **context},
    )
    raise BusinessRuleError(kind, result.message, detail=result.detail)


def _invalid_status(booking: Booking, *, operation: str, actor: Actor) -> NoReturn:
    reject(
        RuleResult(
            passed=False,
            kind=INVALID_BOOKING_STATUS,
            message=f'Booking is {booking.status}; only CONFIRMED bookings can change',
            detail={'booking_id': booking.id, 'status': booking.status},
        ),
        operation=operation,
        actor=actor,
        booking_id=booking.id,
    )


def _resolve_student(db: Session, actor: Actor, student_id: int | None) -> User:
    if actor.is_student:
        target = actor.user_id
    elif student_id is None:
        raise ValidationError('student_id is required when staff act for a student')
    else:
        target = int(student_id)
    student = repo.find_user(db, target)
    if student is None or student.role != Role.STUDENT.value or not student.is_active:
        raise NotFoundError('Student not found')
    assert_can_act_for_student(actor, student.id, student.branch_id)
    return student


def _active_slot(db: Session, slot_id: int, *, for_update: bool = False) -> Slot:
    slot = repo.find_slot(db, slot_id, for_update=for_update)
    if slot is None or not slot.is_active:
        raise NotFoundError('Slot not found')
    return slot


def _load_booking(db: Session, actor: Actor, booking_id: int) -> tuple[Booking, Slot]:
    booking = repo.get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError('Booking not found')
    slot = repo.find_slot(db, booking.slot_id)
    assert_can_view_booking(actor, booking, slot)
    return booking, slot


def assert_capacity_held(db: Session, slot: Slot) -> None:
    """Post-write recount; a concurrent writer that slipped past the admission check loses here."""
    booked = repo.count_bookings(db, slot.id)
    if booked > int(slot.capacity):
        record_observability_event('booking_overbook_prevented')
        raise ConflictError(
            'Slot filled up while the booking was being made',
            detail={'slot_id': slot.id, 'booked_count': booked, 'capacity': int(slot.capacity)},
        )


def admit_booking(
    db: Session,
    actor: Actor,
    *,
    slot: Slot,
    student: User,
    config: SystemConfig,
    time_provider: TimeProvider = default_time_provider,
    idempotency_key: str | None = None,
    skip_rules: bool = False,
    audit_action: str = 'BOOKING_CREATE',
    reason: str = '',
) -> Booking:
    """Rule check, insert and recount for one booking. Caller holds the locks and commits."""
    now = time_provider.local_now()
    if not skip_rules:
        ctx = build_admission_context(
            db,
            actor_user_id=actor.user_id,
            slot=slot,
            student=student,
            config=config,
            now=now,
        )
        result = evaluate(ctx, CREATE_BOOKING_RULES)
        if not result.passed:
            reject(result, operation='create_booking', actor=actor, slot_id=slot.id, student_id=student.id)

    booking = repo.insert_booking(
        db,
        student_id=student.id,
        slot_id=slot.id,
        actor_user_id=actor.user_id,
        booked_at=now,
        idempotency_key=idempotency_key,
    )
    assert_capacity_held(db, slot)
    discard_waiting_entry(db, student.id, slot.id)
    record_audit(
        db,
        actor,
        audit_action,
        'booking',
        booking.id,
        new_value=serialize_booking(booking, slot),
        reason=reason,
        time_provider=time_provider,
    )
    enqueue_notification(
        db,
        EVENT_BOOKING_CONFIRMED,
        booking_id=booking.id,
        slot_id=slot.id,
        time_provider=time_provider,
    )
    return booking


@timed_service('create_booking')
def create_booking(
    db: Session,
    actor: Actor,
    *,
    slot_id: int,
    student_id: int | None = None,
    idempotency_key: str | None = None,
    skip_rules: bool = False,
    audit_action: str = 'BOOKING_CREATE',
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require_role(actor, BOOKING_ROLES)
    if skip_rules and not actor.is_admin:
        raise AuthorizationError('Only administrators may book without rule checks')
    student = _resolve_student(db, actor, student_id)
    key = (idempotency_key or '').strip() or None
    if key:
        replay = repo.find_booking_by_idempotency_key(db, key)
        if replay is not None:
            if int(replay.student_id) != int(student.id) or int(replay.slot_id) != int(slot_id):
                raise ConflictError('Idempotency key was already used for a different booking')
            logger.info('booking_create_replayed booking_id=%s key=%s', replay.id, key)
            return {**serialize_booking(replay), 'replayed': True}

    config = get_system_config(db)
    with booking_locks(slot_key(slot_id), student_key(student.id)):
        try:
            slot = _active_slot(db, slot_id, for_update=True)
            booking = admit_booking(
                db,
                actor,
                slot=slot,
                student=student,
                config=config,
                time_provider=time_provider,
                idempotency_key=key,
                skip_rules=skip_rules,
                audit_action=audit_action,
                reason=reason,
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            record_observability_event('booking_unique_conflict')
            raise ConflictError(
                'Student already has an active booking for this slot',
                detail={'slot_id': slot_id, 'student_id': student.id},
            ) from exc
        except Exception:
            db.rollback()
            raise

    db.refresh(booking)
    record_booking_event('booking_created')
    logger.info('booking_created booking_id=%s slot_id=%s student_id=%s', booking.id, booking.slot_id, booking.student_id)
    return {**serialize_booking(booking), 'replayed': False}


def _synthesized_reason(actor: Actor, *, late: bool, on_behalf_of_student: bool) -> str:
    if actor.is_student:
        return 'Late cancellation by student' if late else 'Cancelled by student'
    who = actor.role.lower().replace('_', ' ')
    if on_behalf_of_student:
        return f'Cancelled by {who} on behalf of student'
    return f'Cancelled by {who}'


@timed_service('cancel_booking')
def cancel_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    *,
    reason: str | None = None,
    on_behalf_of_student: bool = False,
    admin_override: bool = False,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Cancel a CONFIRMED booking.

    The cancellation window binds students, and staff acting on a student's
    behalf unless ``admin_override`` is set. Inside the window the cancel still
    succeeds but the seat is held back with a BlockedSlot until an administrator
    releases it; outside it the seat is offered to the waiting list.
    """
    if admin_override and not actor.is_admin:
        raise AuthorizationError('Only administrators may override the cancellation window')
    booking, slot = _load_booking(db, actor, booking_id)
    if actor.role == Role.TEACHER.value and on_behalf_of_student:
        raise AuthorizationError('Teachers cannot cancel on behalf of a student')
    config = get_system_config(db)

    with booking_locks(slot_key(slot.id), student_key(booking.student_id)):
        try:
            db.refresh(booking, with_for_update=True)
            if booking.status != BookingStatus.CONFIRMED.value:
                _invalid_status(booking, operation='cancel_booking', actor=actor)
            now = time_provider.local_now()
            window_applies = actor.is_student or (on_behalf_of_student and not admin_override)
            late = False
            if window_applies:
                window = cancellation_window(
                    CancellationContext(now=now, slot_starts_at=slot.starts_at, cancellation_hours=config.cancellation_hours)
                )
                late = not window.passed
            effective_reason = (reason or '').strip() or _synthesized_reason(
                actor, late=late, on_behalf_of_student=on_behalf_of_student
            )
            old_value = serialize_booking(booking, slot)
            repo.update_booking_status(
                db,
                booking,
                BookingStatus.CANCELLED.value,
                actor_user_id=actor.user_id,
                at=now,
                cancelled_at=now,
                cancellation_reason=effective_reason[:255],
            )
            if late:
                repo.upsert_blocked_slot(
                    db,
                    slot.id,
                    reason=LATE_CANCELLATION_REASON,
                    blocked_by=actor.user_id,
                    original_booking_id=booking.id,
                    at=now,
                )
            record_audit(
                db,
                actor,
                'ADMIN_OVERRIDE_CANCEL' if admin_override else 'BOOKING_CANCEL',
                'booking',
                booking.id,
                old_value=old_value,
                new_value={**serialize_booking(booking, slot), 'slot_blocked': late},
                reason=effective_reason,
                time_provider=time_provider,
            )
            enqueue_notification(
                db,
                EVENT_BOOKING_CANCELLED,
                booking_id=booking.id,
                slot_id=slot.id,
                reason=effective_reason,
                time_provider=time_provider,
            )
            offered = None if late else offer_next_seat(db, slot.id, now=now, time_provider=time_provider)
            db.commit()
        except Exception:
            db.rollback()
            raise

    record_booking_event('booking_late_cancelled' if late else 'booking_cancelled')
    logger.info(
        'booking_cancelled booking_id=%s slot_id=%s late=%s actor=%s',
        booking.id,
        slot.id,
        late,
        actor.user_id,
    )
    return {
        **serialize_booking(booking, slot),
        'slot_blocked': late,
        'waitlist_offer_entry_id': offered.id if offered is not None else None,
    }


@timed_service('reschedule_booking')
def reschedule_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    new_slot_id: int,
    *,
    skip_cancellation_window: bool = False,
    audit_action: str = 'BOOKING_RESCHEDULE',
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Move a CONFIRMED booking to another slot, keeping its id.

    The new slot goes through the full create rule set with this booking
    excluded from the monthly count. Students are also held to the
    cancellation window of the slot they are leaving.
    """
    require_role(actor, BOOKING_ROLES)
    if skip_cancellation_window and not actor.is_admin:
        raise AuthorizationError('Only administrators may reschedule inside the cancellation window')
    booking, old_slot = _load_booking(db, actor, booking_id)
    if int(new_slot_id) == int(old_slot.id):
        raise ValidationError('Booking is already in this slot')
    student = repo.find_user(db, booking.student_id)
    if student is None:
        raise NotFoundError('Student not found')
    config = get_system_config(db)

    with booking_locks(slot_key(old_slot.id), slot_key(new_slot_id), student_key(student.id)):
        try:
            db.refresh(booking, with_for_update=True)
            if booking.status != BookingStatus.CONFIRMED.value:
                _invalid_status(booking, operation='reschedule_booking', actor=actor)
            if int(booking.slot_id) != int(old_slot.id):
                raise ConflictError('Booking was moved by another request, reload and retry')
            new_slot = _active_slot(db, new_slot_id, for_update=True)
            if actor.role == Role.BRANCH_ADMIN.value:
                assert_branch_scope(actor, new_slot.branch_id, entity='Slot')
            now = time_provider.local_now()
            if actor.is_student and not skip_cancellation_window:
                window = cancellation_window(
                    CancellationContext(now=now, slot_starts_at=old_slot.starts_at, cancellation_hours=config.cancellation_hours)
                )
                if not window.passed:
                    reject(window, operation='reschedule_booking', actor=actor, booking_id=booking.id)

            ctx = build_admission_context(
                db,
                actor_user_id=actor.user_id,
                slot=new_slot,
                student=student,
                config=config,
                now=now,
                exclude_booking_id=booking.id,
            )
            result = evaluate(ctx, CREATE_BOOKING_RULES)
            if not result.passed:
                reject(result, operation='reschedule_booking', actor=actor, booking_id=booking.id, slot_id=new_slot.id)

            old_value = serialize_booking(booking, old_slot)
            repo.reassign_booking_slot(db, booking, new_slot.id, actor_user_id=actor.user_id, at=now)
            assert_capacity_held(db, new_slot)
            discard_waiting_entry(db, student.id, new_slot.id)
            record_audit(
                db,
                actor,
                audit_action,
                'booking',
                booking.id,
                old_value=old_value,
                new_value=serialize_booking(booking, new_slot),
                reason=reason,
                time_provider=time_provider,
            )
            enqueue_notification(
                db,
                EVENT_BOOKING_CONFIRMED,
                booking_id=booking.id,
                slot_id=new_slot.id,
                reason='Rescheduled',
                time_provider=time_provider,
            )
            offer_next_seat(db, old_slot.id, now=now, time_provider=time_provider)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError('Student already has an active booking for this slot') from exc
        except Exception:
            db.rollback()
            raise

    db.refresh(booking)
    record_booking_event('booking_rescheduled')
    logger.info(
        'booking_rescheduled booking_id=%s from_slot=%s to_slot=%s',
        booking.id,
        old_slot.id,
        booking.slot_id,
    )
    return {**serialize_booking(booking), 'previous_slot_id': old_slot.id}


@timed_service('mark_attendance')
def mark_attendance(
    db: Session,
    actor: Actor,
    booking_id: int,
    *,
    attended: bool,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    booking = repo.get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError('Booking not found')
    slot = repo.find_slot(db, booking.slot_id)
    assert_can_manage_slot(actor, slot)

    with booking_locks(slot_key(slot.id)):
        try:
            db.refresh(booking, with_for_update=True)
            if booking.status != BookingStatus.CONFIRMED.value:
                _invalid_status(booking, operation='mark_attendance', actor=actor)
            now = time_provider.local_now()
            status = BookingStatus.COMPLETED.value if attended else BookingStatus.NO_SHOW.value
            old_value = serialize_booking(booking, slot)
            repo.update_booking_status(db, booking, status, actor_user_id=actor.user_id, at=now, attended=bool(attended))
            record_audit(
                db,
                actor,
                'BOOKING_ATTENDANCE',
                'booking',
                booking.id,
                old_value=old_value,
                new_value=serialize_booking(booking, slot),
                time_provider=time_provider,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

    record_booking_event('booking_completed' if attended else 'booking_no_show')
    logger.info('booking_attendance_marked booking_id=%s status=%s', booking.id, booking.status)
    return serialize_booking(booking, slot)


@timed_service('teacher_cancel_slot')
def teacher_cancel_slot(
    db: Session,
    actor: Actor,
    slot_id: int,
    *,
    reason: str | None = None,
    issue_priority_grants: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Cancel every CONFIRMED booking of a slot and retire the slot.

    Bookings are committed one at a time so a failure on one leaves the others
    cancelled; the report lists what was attempted, cancelled and failed. Rows
    already cancelled by an earlier run are not CONFIRMED and are skipped.
    """
    slot = repo.find_slot(db, slot_id)
    if slot is None:
        raise NotFoundError('Slot not found')
    assert_can_manage_slot(actor, slot)
    shared_reason = ((reason or '').strip() or 'Cancelled by teacher')[:255]

    attempted: list[int] = []
    cancelled: list[int] = []
    failed: list[dict] = []
    grants_issued: list[int] = []

    with booking_locks(slot_key(slot.id)):
        bookings = (
            db.query(Booking)
            .filter(Booking.slot_id == slot.id, Booking.status == BookingStatus.CONFIRMED.value)
            .order_by(Booking.id.asc())
            .all()
        )
        for booking in bookings:
            booking_id = int(booking.id)
            student_id = int(booking.student_id)
            attempted.append(booking_id)
            try:
                now = time_provider.local_now()
                repo.update_booking_status(
                    db,
                    booking,
                    BookingStatus.CANCELLED.value,
                    actor_user_id=actor.user_id,
                    at=now,
                    cancelled_at=now,
                    cancellation_reason=shared_reason,
                )
                if issue_priority_grants:
                    repo.upsert_priority_grant(
                        db,
                        student_id,
                        original_slot_id=slot.id,
                        original_booking_id=booking_id,
                        branch_id=slot.branch_id,
                        reason=shared_reason,
                        created_at=now,
                        expires_at=now + timedelta(days=settings.priority_grant_days),
                        actor_user_id=actor.user_id,
                    )
                db.commit()
            except Exception as exc:
                db.rollback()
                failed.append({'booking_id': booking_id, 'error': f'{type(exc).__name__}: {exc}'})
                record_observability_event('teacher_cancellation_booking_failed')
                logger.warning(
                    'teacher_cancellation_booking_failed',
                    extra={'slot_id': slot_id, 'booking_id': booking_id},
                    exc_info=True,
                )
                continue
            cancelled.append(booking_id)
            if issue_priority_grants:
                grants_issued.append(student_id)

        try:
            now = time_provider.local_now()
            slot = repo.find_slot(db, slot_id, for_update=True)
            slot.is_active = False
            cleared = clear_waiting_list(db, slot.id)
            report = {
                'slot_id': slot.id,
                'reason': shared_reason,
                'attempted': attempted,
                'cancelled': cancelled,
                'failed': failed,
                'grants_issued': grants_issued,
                'waitlist_cleared': cleared,
            }
            record_audit(
                db,
                actor,
                'TEACHER_CANCEL_SLOT',
                'slot',
                slot.id,
                new_value=report,
                reason=shared_reason,
                time_provider=time_provider,
            )
            enqueue_notification(
                db,
                EVENT_TEACHER_CANCELLATION,
                slot_id=slot.id,
                reason=shared_reason,
                time_provider=time_provider,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

    record_booking_event('teacher_slot_cancelled')
    logger.info(
        'teacher_slot_cancelled slot_id=%s attempted=%s cancelled=%s failed=%s',
        slot_id,
        len(attempted),
        len(cancelled),
        len(failed),
    )
    return report


def get_booking(db: Session, actor: Actor, booking_id: int) -> dict:
    booking, slot = _load_booking(db, actor, booking_id)
    return serialize_booking(booking, slot)


def list_bookings(
    db: Session,
    actor: Actor,
    *,
    student_id: int | None = None,
    slot_id: int | None = None,
    branch_id: int | None = None,
    teacher_id: int | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 200,
) -> list[dict]:
    """Bookings visible to the actor: students see their own, teachers their slots, branch admins their branch."""
    query = db.query(Booking, Slot).join(Slot, Slot.id == Booking.slot_id)
    if actor.is_student:
        query = query.filter(Booking.student_id == actor.user_id)
    elif actor.role == Role.TEACHER.value:
        query = query.filter(Slot.teacher_id == actor.user_id)
    elif actor.role == Role.BRANCH_ADMIN.value:
        query = query.filter(Slot.branch_id == actor.branch_id)

    if student_id is not None:
        query = query.filter(Booking.student_id == int(student_id))
    if slot_id is not None:
        query = query.filter(Booking.slot_id == int(slot_id))
    if branch_id is not None:
        query = query.filter(Slot.branch_id == int(branch_id))
    if teacher_id is not None:
        query = query.filter(Slot.teacher_id == int(teacher_id))
    if status:
        normalized = str(status).strip().upper()
        if normalized not in {item.value for item in BookingStatus}:
            raise ValidationError(f'Unknown booking status {status}')
        query = query.filter(Booking.status == normalized)
    if date_from is not None:
        query = query.filter(Slot.date >= date_from)
    if date_to is not None:
        query = query.filter(Slot.date <= date_to)

    rows = (
        query.order_by(Slot.date.asc(), Slot.start_time.asc(), Booking.id.asc())
        .limit(max(1, min(1000, int(limit))))
        .all()
    )
    return [serialize_booking(booking, slot) for booking, slot in rows]


def get_monthly_booking_status(
    db: Session,
    actor: Actor,
    *,
    student_id: int | None = None,
    on_date: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    student = _resolve_student(db, actor, student_id)
    now = time_provider.local_now()
    target_day = on_date or now.date()
    month_start, month_end = month_range(target_day)
    existing = repo.find_monthly_booking(db, student.id, (month_start, month_end))
    bypass = monthly_bypass_active(db, student.id, now, actor_user_id=actor.user_id)
    bypass_row = repo.find_monthly_bypass(db, student.id) if bypass else None
    db.commit()
    config = get_system_config(db)
    return {
        'student_id': student.id,
        'month_start': month_start.isoformat(),
        'month_end': month_end.isoformat(),
        'has_booking': existing is not None,
        'booking': serialize_booking(existing) if existing is not None else None,
        'can_book': existing is None or bypass,
        'bypass_active': bypass,
        'bypass_expires_at': bypass_row.expires_at.isoformat() if bypass_row is not None else None,
        'max_bookings_per_month': config.max_bookings_per_month,
    }
