from __future__ import annotations

import logging

from sqlalchemy import delete
from sqlalchemy.orm import Session

from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.metrics import timed_service
from tutoring_booking.models import MonthlyBypassGrant, PriorityRescheduleGrant
from tutoring_booking.services.waiting_list_service import delete_expired_waiting_entries


logger = logging.getLogger(__name__)


@timed_service('sweep_expired_grants')
def sweep_expired_grants(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict[str, int]:
    """Delete expired priority grants, monthly bypasses and waiting entries.

    Reads already ignore expired rows, so this only keeps the tables small.
    """
    now = time_provider.local_now()
    try:
        grants = db.execute(delete(PriorityRescheduleGrant).where(PriorityRescheduleGrant.expires_at < now)).rowcount
        bypasses = db.execute(delete(MonthlyBypassGrant).where(MonthlyBypassGrant.expires_at < now)).rowcount
        waiting = delete_expired_waiting_entries(db, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    summary = {
        'priority_grants': int(grants or 0),
        'monthly_bypasses': int(bypasses or 0),
        'waiting_entries': int(waiting or 0),
    }
    if any(summary.values()):
        logger.info('expired_grants_swept', extra=summary)
    return summary
