from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tutoring_booking.core.router_guard import require_actor
from tutoring_booking.db import get_db
from tutoring_booking.models import Role
from tutoring_booking.schemas import SystemConfigUpdateRequest
from tutoring_booking.services.access_scope_service import Actor, require_role
from tutoring_booking.services.audit_service import list_audit_logs
from tutoring_booking.services.observability_counters import snapshot_observability_counts
from tutoring_booking.services.system_config_service import get_system_config, update_system_config


router = APIRouter(prefix='/api/system', tags=['System'])


@router.get('/config')
def get_config_endpoint(actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return get_system_config(db).as_dict()


@router.put('/config')
def update_config_endpoint(
    payload: SystemConfigUpdateRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    updated = update_system_config(
        db,
        actor,
        max_bookings_per_month=payload.max_bookings_per_month,
        cancellation_hours=payload.cancellation_hours,
        allow_cross_branch_booking=payload.allow_cross_branch_booking,
    )
    return updated.as_dict()


@router.get('/audit-logs')
def audit_logs_endpoint(
    action: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {
        'items': list_audit_logs(db, actor, action=action, entity_type=entity_type, entity_id=entity_id, limit=limit)
    }


@router.get('/observability')
def observability_endpoint(actor: Actor = Depends(require_actor)):
    require_role(actor, {Role.SUPER_ADMIN.value})
    return {'counts_24h': snapshot_observability_counts()}
