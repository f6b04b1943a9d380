from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.errors import ConflictError, ValidationError
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.models import Role, SystemConfigRecord
from tutoring_booking.services.access_scope_service import Actor, require_role
from tutoring_booking.services.audit_service import record_audit


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemConfig:
    max_bookings_per_month: int
    cancellation_hours: int
    allow_cross_branch_booking: bool
    version: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def default_system_config() -> SystemConfig:
    return SystemConfig(
        max_bookings_per_month=settings.default_max_bookings_per_month,
        cancellation_hours=settings.default_cancellation_hours,
        allow_cross_branch_booking=settings.default_allow_cross_branch_booking,
        version=0,
    )


def get_system_config(db: Session) -> SystemConfig:
    """Latest version wins; callers load once per operation and pass the value down."""
    row = db.query(SystemConfigRecord).order_by(SystemConfigRecord.version.desc()).first()
    if row is None:
        return default_system_config()
    return SystemConfig(
        max_bookings_per_month=int(row.max_bookings_per_month),
        cancellation_hours=int(row.cancellation_hours),
        allow_cross_branch_booking=bool(row.allow_cross_branch_booking),
        version=int(row.version),
    )


def _validate(config: SystemConfig) -> None:
    if not 1 <= config.max_bookings_per_month <= 10:
        raise ValidationError('max_bookings_per_month must be between 1 and 10')
    if not 1 <= config.cancellation_hours <= 72:
        raise ValidationError('cancellation_hours must be between 1 and 72')


def update_system_config(
    db: Session,
    actor: Actor,
    *,
    max_bookings_per_month: int | None = None,
    cancellation_hours: int | None = None,
    allow_cross_branch_booking: bool | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> SystemConfig:
    require_role(actor, {Role.SUPER_ADMIN.value})
    current = get_system_config(db)
    changes = {
        key: value
        for key, value in (
            ('max_bookings_per_month', max_bookings_per_month),
            ('cancellation_hours', cancellation_hours),
            ('allow_cross_branch_booking', allow_cross_branch_booking),
        )
        if value is not None
    }
    latest_version = db.query(func.max(SystemConfigRecord.version)).scalar() or 0
    updated = replace(current, version=int(latest_version) + 1, **changes)
    _validate(updated)

    db.add(
        SystemConfigRecord(
            version=updated.version,
            max_bookings_per_month=updated.max_bookings_per_month,
            cancellation_hours=updated.cancellation_hours,
            allow_cross_branch_booking=updated.allow_cross_branch_booking,
            updated_by=actor.user_id,
            created_at=time_provider.local_now(),
        )
    )
    record_audit(
        db,
        actor,
        'SYSTEM_CONFIG_UPDATE',
        'system_config',
        updated.version,
        old_value=current.as_dict(),
        new_value=updated.as_dict(),
        time_provider=time_provider,
    )
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError('System settings were changed concurrently, reload and retry') from exc
    logger.info('system_config_updated version=%s actor=%s', updated.version, actor.user_id)
    return updated
