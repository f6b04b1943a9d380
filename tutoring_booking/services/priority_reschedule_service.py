from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.errors import ConflictError, NotFoundError, ValidationError
from tutoring_booking.core.slot_lock import booking_locks, slot_key, student_key
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.metrics import record_booking_event, timed_service
from tutoring_booking.models import PriorityRescheduleGrant, Role
from tutoring_booking.services import booking_repository as repo
from tutoring_booking.services.access_scope_service import Actor, assert_can_act_for_student, require_role
from tutoring_booking.services.audit_service import record_audit
from tutoring_booking.services.availability_service import compute_availability
from tutoring_booking.services.booking_service import admit_booking, serialize_booking
from tutoring_booking.services.observability_counters import record_observability_event
from tutoring_booking.services.system_config_service import get_system_config


logger = logging.getLogger(__name__)


def serialize_grant(grant: PriorityRescheduleGrant) -> dict:
    return {
        'student_id': grant.student_id,
        'original_slot_id': grant.original_slot_id,
        'original_booking_id': grant.original_booking_id,
        'branch_id': grant.branch_id,
        'reason': grant.reason,
        'granted_by': grant.granted_by,
        'created_at': grant.created_at.isoformat(),
        'expires_at': grant.expires_at.isoformat(),
    }


def _student_for(db: Session, actor: Actor, student_id: int | None):
    target = actor.user_id if actor.is_student else student_id
    if target is None:
        raise ValidationError('student_id is required when staff act for a student')
    student = repo.find_user(db, target)
    if student is None or student.role != Role.STUDENT.value:
        raise NotFoundError('Student not found')
    assert_can_act_for_student(actor, student.id, student.branch_id)
    return student


def grant_priority_reschedule(
    db: Session,
    actor: Actor,
    *,
    student_id: int,
    original_slot_id: int,
    original_booking_id: int,
    branch_id: int | None = None,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Issue or overwrite a student's grant by hand; teacher cancellations issue theirs inline."""
    require_role(actor, {Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value})
    student = _student_for(db, actor, student_id)
    booking = repo.get_booking(db, original_booking_id)
    if booking is None or int(booking.student_id) != int(student.id) or int(booking.slot_id) != int(original_slot_id):
        raise NotFoundError('Original booking not found')
    slot = repo.find_slot(db, original_slot_id)
    now = time_provider.local_now()
    grant = repo.upsert_priority_grant(
        db,
        student.id,
        original_slot_id=slot.id,
        original_booking_id=booking.id,
        branch_id=int(branch_id if branch_id is not None else slot.branch_id),
        reason=(reason or 'Manual priority reschedule grant')[:255],
        created_at=now,
        expires_at=now + timedelta(days=settings.priority_grant_days),
        actor_user_id=actor.user_id,
    )
    record_audit(
        db,
        actor,
        'PRIORITY_GRANT_ISSUE',
        'priority_grant',
        student.id,
        new_value=serialize_grant(grant),
        reason=reason,
        time_provider=time_provider,
    )
    db.commit()
    logger.info('priority_grant_issued student_id=%s slot_id=%s', student.id, slot.id)
    return serialize_grant(grant)


def check_priority_grant(
    db: Session,
    actor: Actor,
    *,
    student_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict | None:
    """The student's live grant, or None. An expired grant is deleted when seen."""
    student = _student_for(db, actor, student_id)
    grant = repo.find_priority_grant(db, student.id)
    if grant is None:
        return None
    if grant.expires_at < time_provider.local_now():
        repo.delete_priority_grant(db, student.id, actor_user_id=actor.user_id)
        db.commit()
        logger.info('priority_grant_expired student_id=%s', student.id)
        return None
    return serialize_grant(grant)


@timed_service('consume_priority_grant')
def consume_priority_grant(
    db: Session,
    actor: Actor,
    new_slot_id: int,
    *,
    student_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Spend the grant on a replacement slot.

    The grant row is removed by one conditional DELETE, so two racing requests
    cannot both spend it. If the booking then fails any rule the rollback puts
    the grant back.
    """
    student = _student_for(db, actor, student_id)
    config = get_system_config(db)

    with booking_locks(slot_key(new_slot_id), student_key(student.id)):
        try:
            now = time_provider.local_now()
            grant = repo.find_priority_grant(db, student.id)
            if grant is None:
                raise NotFoundError('No active priority reschedule grant')
            grant_snapshot = serialize_grant(grant)
            if not repo.delete_priority_grant(db, student.id, actor_user_id=actor.user_id, valid_at=now):
                repo.delete_priority_grant(db, student.id, actor_user_id=actor.user_id)
                db.commit()
                raise NotFoundError('No active priority reschedule grant')

            slot = repo.find_slot(db, new_slot_id, for_update=True)
            if slot is None or not slot.is_active:
                raise NotFoundError('Slot not found')
            booking = admit_booking(
                db,
                actor,
                slot=slot,
                student=student,
                config=config,
                time_provider=time_provider,
                audit_action='PRIORITY_GRANT_CONSUME',
                reason=grant_snapshot['reason'],
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError('Student already has an active booking for this slot') from exc
        except Exception:
            db.rollback()
            raise

    db.refresh(booking)
    record_booking_event('priority_grant_consumed')
    record_observability_event('priority_grant_consumed')
    logger.info('priority_grant_consumed student_id=%s booking_id=%s', student.id, booking.id)
    return {**serialize_booking(booking), 'grant': grant_snapshot}


def replacement_pool(
    db: Session,
    actor: Actor,
    *,
    student_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> list[dict]:
    """Open future slots a grant holder may move into; limited to the grant branch when cross-branch is off."""
    grant = check_priority_grant(db, actor, student_id=student_id, time_provider=time_provider)
    if grant is None:
        raise NotFoundError('No active priority reschedule grant')
    config = get_system_config(db)
    branch_ids = None if config.allow_cross_branch_booking else [grant['branch_id']]
    rows = compute_availability(
        db,
        branch_ids=branch_ids,
        date_from=date_from,
        date_to=date_to,
        starting_after=time_provider.local_now(),
    )
    return [row.as_dict() for row in rows if row.slot_id != grant['original_slot_id']]
