from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable

from sqlalchemy.orm import Session

from tutoring_booking.core.errors import ValidationError
from tutoring_booking.metrics import timed_service
from tutoring_booking.models import BlockedSlot, Slot
from tutoring_booking.services.booking_repository import count_bookings_by_slot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotAvailability:
    slot_id: int
    branch_id: int
    teacher_id: int
    date: date
    start_time: time
    end_time: time
    capacity: int
    booked_count: int
    is_blocked: bool = False

    @property
    def available_spots(self) -> int:
        return max(0, self.capacity - self.booked_count)

    def as_dict(self) -> dict[str, Any]:
        return {
            'slot_id': self.slot_id,
            'branch_id': self.branch_id,
            'teacher_id': self.teacher_id,
            'date': self.date.isoformat(),
            'start_time': self.start_time.strftime('%H:%M'),
            'end_time': self.end_time.strftime('%H:%M'),
            'capacity': self.capacity,
            'booked_count': self.booked_count,
            'available_spots': self.available_spots,
            'is_blocked': self.is_blocked,
        }


@timed_service('compute_availability')
def compute_availability(
    db: Session,
    *,
    branch_id: int | None = None,
    teacher_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    branch_ids: Iterable[int] | None = None,
    starting_after: datetime | None = None,
    include_full: bool = False,
) -> list[SlotAvailability]:
    """Remaining capacity per active slot, derived from live booking counts on every call.

    Fully booked and blocked slots are dropped unless ``include_full`` is set
    (admin views). Ordered by date, start time, then slot id.
    """
    if date_from and date_to and date_from > date_to:
        raise ValidationError('date_from must be on or before date_to')

    query = db.query(Slot).filter(Slot.is_active.is_(True))
    if branch_id is not None:
        query = query.filter(Slot.branch_id == int(branch_id))
    if branch_ids is not None:
        query = query.filter(Slot.branch_id.in_([int(value) for value in branch_ids]))
    if teacher_id is not None:
        query = query.filter(Slot.teacher_id == int(teacher_id))
    if date_from is not None:
        query = query.filter(Slot.date >= date_from)
    if date_to is not None:
        query = query.filter(Slot.date <= date_to)
    slots = query.order_by(Slot.date.asc(), Slot.start_time.asc(), Slot.id.asc()).all()
    if starting_after is not None:
        slots = [slot for slot in slots if slot.starts_at >= starting_after]
    if not slots:
        return []

    slot_ids = [slot.id for slot in slots]
    booked = count_bookings_by_slot(db, slot_ids)
    blocked_ids = {
        int(slot_id)
        for (slot_id,) in db.query(BlockedSlot.slot_id).filter(BlockedSlot.slot_id.in_(slot_ids)).all()
    }

    rows: list[SlotAvailability] = []
    for slot in slots:
        row = SlotAvailability(
            slot_id=slot.id,
            branch_id=slot.branch_id,
            teacher_id=slot.teacher_id,
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            capacity=int(slot.capacity),
            booked_count=booked.get(slot.id, 0),
            is_blocked=slot.id in blocked_ids,
        )
        if not include_full and (row.available_spots <= 0 or row.is_blocked):
            continue
        rows.append(row)
    logger.debug('availability_computed slots=%s returned=%s', len(slots), len(rows))
    return rows
