import unittest
from datetime import datetime, timedelta

from booking_test_support import BookingDbTestCase
from freezegun import freeze_time

from tutoring_booking.core.time_provider import TimeProvider
from tutoring_booking.models import Booking, MonthlyBypassGrant, PriorityRescheduleGrant, WaitingListEntry
from tutoring_booking.services.expiry_sweep_service import sweep_expired_grants


class ExpirySweepTests(BookingDbTestCase):
    db_name = 'test_expiry_sweep.db'

    def _seed(self, expires_at: datetime, student_id: int, slot_id: int) -> None:
        booking = Booking(student_id=student_id, slot_id=slot_id, status='CANCELLED', booked_at=self.start_at)
        self.db.add(booking)
        self.db.commit()
        self.db.add_all(
            [
                PriorityRescheduleGrant(
                    student_id=student_id,
                    original_slot_id=slot_id,
                    original_booking_id=booking.id,
                    branch_id=self.branch_a,
                    reason='Teacher unavailable',
                    created_at=self.start_at,
                    expires_at=expires_at,
                ),
                MonthlyBypassGrant(
                    student_id=student_id,
                    reason='Exams',
                    granted_by=self.admin_a,
                    granted_at=self.start_at,
                    expires_at=expires_at,
                ),
                WaitingListEntry(
                    student_id=student_id,
                    slot_id=slot_id,
                    position=student_id,
                    created_at=self.start_at,
                    expires_at=expires_at,
                ),
            ]
        )
        self.db.commit()

    # 03:30 UTC is 09:00 in the app timezone.
    @freeze_time('2026-03-20 03:30:00')
    def test_sweep_removes_only_expired_rows(self):
        slot_id = self.make_slot(capacity=1)
        local_now = datetime(2026, 3, 20, 9, 0, 0)
        self._seed(local_now - timedelta(seconds=1), self.student_1, slot_id)
        self._seed(local_now + timedelta(hours=1), self.student_2, slot_id)

        summary = sweep_expired_grants(self.db, time_provider=TimeProvider())

        self.assertEqual(summary, {'priority_grants': 1, 'monthly_bypasses': 1, 'waiting_entries': 1})
        self.assertEqual([row.student_id for row in self.db.query(PriorityRescheduleGrant).all()], [self.student_2])
        self.assertEqual([row.student_id for row in self.db.query(MonthlyBypassGrant).all()], [self.student_2])
        self.assertEqual([row.student_id for row in self.db.query(WaitingListEntry).all()], [self.student_2])

    @freeze_time('2026-03-20 03:30:00')
    def test_sweep_with_nothing_expired_is_a_no_op(self):
        summary = sweep_expired_grants(self.db, time_provider=TimeProvider())
        self.assertEqual(summary, {'priority_grants': 0, 'monthly_bypasses': 0, 'waiting_entries': 0})


if __name__ == '__main__':
    unittest.main()
