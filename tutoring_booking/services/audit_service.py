from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.models import AuditLog, Role
from tutoring_booking.services.access_scope_service import Actor, require_role


logger = logging.getLogger(__name__)


def _dump(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def record_audit(
    db: Session,
    actor: Actor | None,
    action: str,
    entity_type: str,
    entity_id: Any,
    *,
    old_value: Any = None,
    new_value: Any = None,
    reason: str = '',
    outcome: str = 'success',
    time_provider: TimeProvider = default_time_provider,
) -> AuditLog:
    """Stage an audit row inside the caller's transaction."""
    row = AuditLog(
        actor_user_id=actor.user_id if actor else None,
        actor_role=actor.role if actor else '',
        actor_branch_id=actor.branch_id if actor else None,
        action=str(action),
        entity_type=str(entity_type or ''),
        entity_id=str(entity_id) if entity_id is not None else None,
        old_value_json=_dump(old_value),
        new_value_json=_dump(new_value),
        reason=str(reason or '')[:255],
        outcome=outcome,
        created_at=time_provider.local_now(),
    )
    db.add(row)
    db.flush()
    return row


def record_failed_audit(
    db: Session,
    actor: Actor | None,
    action: str,
    entity_type: str,
    entity_id: Any,
    *,
    error: BaseException,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> None:
    """Roll back the failed unit of work, then commit a failure audit row on its own."""
    db.rollback()
    try:
        record_audit(
            db,
            actor,
            action,
            entity_type,
            entity_id,
            new_value={'error': type(error).__name__, 'message': str(error)},
            reason=reason,
            outcome='failed',
            time_provider=time_provider,
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            'audit_failure_write_failed',
            extra={'action': action, 'entity_type': entity_type, 'entity_id': entity_id},
        )
        raise


def list_audit_logs(
    db: Session,
    actor: Actor,
    *,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    require_role(actor, {Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value})
    query = db.query(AuditLog)
    if actor.role == Role.BRANCH_ADMIN.value:
        query = query.filter(AuditLog.actor_branch_id == actor.branch_id)
    if action:
        query = query.filter(AuditLog.action == action)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    rows = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(max(1, min(500, int(limit)))).all()
    return [
        {
            'id': row.id,
            'actor_user_id': row.actor_user_id,
            'actor_role': row.actor_role,
            'action': row.action,
            'entity_type': row.entity_type,
            'entity_id': row.entity_id,
            'old_value': json.loads(row.old_value_json) if row.old_value_json else None,
            'new_value': json.loads(row.new_value_json) if row.new_value_json else None,
            'reason': row.reason,
            'outcome': row.outcome,
            'created_at': row.created_at.isoformat(),
        }
        for row in rows
    ]
