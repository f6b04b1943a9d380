from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from tutoring_booking.models import Slot, User
from tutoring_booking.services import booking_repository as repo
from tutoring_booking.services.rule_engine import AdmissionContext, month_range
from tutoring_booking.services.system_config_service import SystemConfig


logger = logging.getLogger(__name__)


def monthly_bypass_active(db: Session, student_id: int, now: datetime, *, actor_user_id: int) -> bool:
    """Unexpired bypass suppresses the monthly rule; an expired one is deleted on sight."""
    row = repo.find_monthly_bypass(db, student_id)
    if row is None:
        return False
    if row.expires_at < now:
        repo.delete_monthly_bypass(db, student_id, actor_user_id=actor_user_id)
        logger.info('monthly_bypass_expired student_id=%s', student_id)
        return False
    return True


def build_admission_context(
    db: Session,
    *,
    actor_user_id: int,
    slot: Slot,
    student: User,
    config: SystemConfig,
    now: datetime,
    exclude_booking_id: int | None = None,
) -> AdmissionContext:
    """Load everything the create rules read, with the booking being moved excluded from counts."""
    booked_count = repo.count_bookings(db, slot.id)
    duplicate = repo.find_booking(db, student.id, slot.id, exclude_booking_id=exclude_booking_id)
    monthly = repo.find_monthly_booking(
        db,
        student.id,
        month_range(slot.date),
        exclude_booking_id=exclude_booking_id,
    )
    blocked = repo.find_blocked_slot(db, slot.id)
    return AdmissionContext(
        now=now,
        config=config,
        slot_id=slot.id,
        slot_branch_id=slot.branch_id,
        slot_date=slot.date,
        slot_starts_at=slot.starts_at,
        capacity=int(slot.capacity),
        booked_count=booked_count,
        student_id=student.id,
        student_branch_id=student.branch_id,
        duplicate_booking_id=duplicate.id if duplicate else None,
        monthly_booking_id=monthly.id if monthly else None,
        monthly_bypass_active=monthly_bypass_active(db, student.id, now, actor_user_id=actor_user_id),
        block_reason=blocked.reason if blocked else None,
    )
