"""Privileged bypasses of the booking rules.

Open to SUPER_ADMIN everywhere and to BRANCH_ADMIN inside their own branch.
Every attempt leaves an audit row: successes inside the operation's own
transaction, failures in a separate commit after the rollback.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.errors import NotFoundError, ValidationError
from tutoring_booking.core.slot_lock import booking_locks, slot_key
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.models import Role
from tutoring_booking.services import booking_repository as repo
from tutoring_booking.services.access_scope_service import Actor, assert_branch_scope, require_role
from tutoring_booking.services.audit_service import record_audit, record_failed_audit
from tutoring_booking.services.booking_service import create_booking, reschedule_booking
from tutoring_booking.services.observability_counters import record_observability_event
from tutoring_booking.services.waiting_list_service import offer_next_seat


logger = logging.getLogger(__name__)

ADMIN_ROLES = {Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value}


def _require_reason(reason: str | None) -> str:
    value = (reason or '').strip()
    if not value:
        raise ValidationError('A reason is required for administrative overrides')
    return value[:255]


def _failed(db: Session, actor: Actor, action: str, entity_type: str, entity_id, exc: Exception, reason, time_provider) -> None:
    record_observability_event('admin_override_failed')
    logger.warning(
        'admin_override_failed',
        extra={'action': action, 'entity_id': entity_id, 'actor_user_id': actor.user_id, 'error': type(exc).__name__},
    )
    record_failed_audit(
        db,
        actor,
        action,
        entity_type,
        entity_id,
        error=exc,
        reason=reason or '',
        time_provider=time_provider,
    )


def force_booking(
    db: Session,
    actor: Actor,
    *,
    slot_id: int,
    student_id: int,
    reason: str,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Book without rule checks; storage still refuses overbooking and duplicates."""
    action = 'ADMIN_FORCE_BOOKING'
    try:
        require_role(actor, ADMIN_ROLES)
        clean_reason = _require_reason(reason)
        slot = repo.find_slot(db, slot_id)
        if slot is None:
            raise NotFoundError('Slot not found')
        assert_branch_scope(actor, slot.branch_id, entity='Slot')
        result = create_booking(
            db,
            actor,
            slot_id=slot.id,
            student_id=student_id,
            skip_rules=True,
            audit_action=action,
            reason=clean_reason,
            time_provider=time_provider,
        )
    except Exception as exc:
        _failed(db, actor, action, 'slot', slot_id, exc, reason, time_provider)
        raise
    logger.info('admin_force_booking slot_id=%s student_id=%s actor=%s', slot_id, student_id, actor.user_id)
    return result


def unblock_slot(
    db: Session,
    actor: Actor,
    *,
    slot_id: int,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    action = 'ADMIN_UNBLOCK_SLOT'
    try:
        require_role(actor, ADMIN_ROLES)
        slot = repo.find_slot(db, slot_id)
        if slot is None:
            raise NotFoundError('Slot not found')
        assert_branch_scope(actor, slot.branch_id, entity='Slot')
        with booking_locks(slot_key(slot.id)):
            block = repo.find_blocked_slot(db, slot.id)
            if block is None:
                raise NotFoundError('Slot is not blocked')
            old_value = {
                'slot_id': block.slot_id,
                'reason': block.reason,
                'blocked_by': block.blocked_by,
                'original_booking_id': block.original_booking_id,
                'blocked_at': block.blocked_at.isoformat(),
            }
            repo.delete_blocked_slot(db, slot.id, actor_user_id=actor.user_id)
            now = time_provider.local_now()
            offered = offer_next_seat(db, slot.id, now=now, time_provider=time_provider) if slot.is_active else None
            record_audit(
                db,
                actor,
                action,
                'slot',
                slot.id,
                old_value=old_value,
                new_value={'blocked': False},
                reason=reason,
                time_provider=time_provider,
            )
            db.commit()
    except Exception as exc:
        _failed(db, actor, action, 'slot', slot_id, exc, reason, time_provider)
        raise
    logger.info('admin_slot_unblocked slot_id=%s actor=%s', slot_id, actor.user_id)
    return {
        'slot_id': int(slot_id),
        'unblocked': True,
        'waitlist_offer_entry_id': offered.id if offered is not None else None,
    }


def bypass_monthly_limit(
    db: Session,
    actor: Actor,
    *,
    student_id: int,
    reason: str,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    action = 'ADMIN_MONTHLY_BYPASS'
    try:
        require_role(actor, ADMIN_ROLES)
        clean_reason = _require_reason(reason)
        student = repo.find_user(db, student_id)
        if student is None or student.role != Role.STUDENT.value:
            raise NotFoundError('Student not found')
        assert_branch_scope(actor, student.branch_id, entity='Student')
        previous = repo.find_monthly_bypass(db, student.id)
        old_value = {'expires_at': previous.expires_at.isoformat(), 'reason': previous.reason} if previous else None
        now = time_provider.local_now()
        grant = repo.upsert_monthly_bypass(
            db,
            student.id,
            reason=clean_reason,
            granted_by=actor.user_id,
            granted_at=now,
            expires_at=now + timedelta(days=settings.monthly_bypass_days),
        )
        payload = {
            'student_id': grant.student_id,
            'reason': grant.reason,
            'granted_by': grant.granted_by,
            'granted_at': grant.granted_at.isoformat(),
            'expires_at': grant.expires_at.isoformat(),
        }
        record_audit(
            db,
            actor,
            action,
            'student',
            student.id,
            old_value=old_value,
            new_value=payload,
            reason=clean_reason,
            time_provider=time_provider,
        )
        db.commit()
    except Exception as exc:
        _failed(db, actor, action, 'student', student_id, exc, reason, time_provider)
        raise
    logger.info('admin_monthly_bypass student_id=%s actor=%s', student_id, actor.user_id)
    return payload


def emergency_reschedule(
    db: Session,
    actor: Actor,
    *,
    booking_id: int,
    new_slot_id: int,
    reason: str,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Reschedule without the cancellation window; every other rule still applies to the new slot."""
    action = 'ADMIN_EMERGENCY_RESCHEDULE'
    try:
        require_role(actor, ADMIN_ROLES)
        clean_reason = _require_reason(reason)
        result = reschedule_booking(
            db,
            actor,
            booking_id,
            new_slot_id,
            skip_cancellation_window=True,
            audit_action=action,
            reason=clean_reason,
            time_provider=time_provider,
        )
    except Exception as exc:
        _failed(db, actor, action, 'booking', booking_id, exc, reason, time_provider)
        raise
    logger.info('admin_emergency_reschedule booking_id=%s new_slot_id=%s', booking_id, new_slot_id)
    return result
