import unittest
from datetime import date, time

from booking_test_support import BookingDbTestCase

from tutoring_booking.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tutoring_booking.models import AuditLog, WaitingListEntry
from tutoring_booking.services.availability_service import compute_availability
from tutoring_booking.services.booking_service import create_booking
from tutoring_booking.services.slot_service import create_slot, deactivate_slot, get_slot, update_slot_capacity
from tutoring_booking.services.waiting_list_service import join_waiting_list


class SlotServiceTests(BookingDbTestCase):
    db_name = 'test_slot_service.db'

    def test_teacher_creates_own_slot(self):
        created = create_slot(
            self.db,
            self.teacher(),
            branch_id=self.branch_a,
            slot_date=date(2026, 3, 18),
            start_time=time(16, 0),
            end_time=time(17, 0),
            capacity=3,
            teacher_id=self.teacher_b,
            time_provider=self.clock,
        )
        self.assertEqual(created['teacher_id'], self.teacher_a)
        self.assertEqual(created['available_spots'], 3)
        self.assertEqual(self.db.query(AuditLog).filter(AuditLog.action == 'SLOT_CREATE').count(), 1)

    def test_teacher_cannot_double_book_a_start_time(self):
        kwargs = dict(
            branch_id=self.branch_a,
            slot_date=date(2026, 3, 18),
            start_time=time(16, 0),
            end_time=time(17, 0),
            time_provider=self.clock,
        )
        create_slot(self.db, self.teacher(), **kwargs)
        with self.assertRaises(ConflictError):
            create_slot(self.db, self.teacher(), **kwargs)

    def test_slot_validation(self):
        with self.assertRaises(ValidationError):
            create_slot(
                self.db,
                self.teacher(),
                branch_id=self.branch_a,
                slot_date=date(2026, 3, 18),
                start_time=time(16, 0),
                end_time=time(15, 0),
                time_provider=self.clock,
            )
        with self.assertRaises(ValidationError):
            create_slot(
                self.db,
                self.branch_admin(),
                branch_id=self.branch_a,
                slot_date=date(2026, 3, 18),
                start_time=time(16, 0),
                end_time=time(17, 0),
                time_provider=self.clock,
            )
        with self.assertRaises(NotFoundError):
            create_slot(
                self.db,
                self.branch_admin(),
                branch_id=self.branch_b,
                slot_date=date(2026, 3, 18),
                start_time=time(16, 0),
                end_time=time(17, 0),
                teacher_id=self.teacher_b,
                time_provider=self.clock,
            )
        with self.assertRaises(AuthorizationError):
            create_slot(
                self.db,
                self.student(self.student_1),
                branch_id=self.branch_a,
                slot_date=date(2026, 3, 18),
                start_time=time(16, 0),
                end_time=time(17, 0),
                teacher_id=self.teacher_a,
                time_provider=self.clock,
            )

    def test_capacity_cannot_drop_below_bookings(self):
        slot_id = self.make_slot(capacity=2)
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        create_booking(self.db, self.student(self.student_2), slot_id=slot_id, time_provider=self.clock)
        with self.assertRaises(ValidationError) as ctx:
            update_slot_capacity(self.db, self.teacher(), slot_id, capacity=1, time_provider=self.clock)
        self.assertEqual(ctx.exception.detail['booked_count'], 2)
        self.assertEqual(get_slot(self.db, slot_id)['capacity'], 2)

    def test_raising_capacity_offers_new_seats_to_waiting_list(self):
        slot_id = self.make_slot(capacity=1)
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        join_waiting_list(self.db, self.student(self.student_3), slot_id, time_provider=self.clock)

        result = update_slot_capacity(self.db, self.branch_admin(), slot_id, capacity=2, time_provider=self.clock)

        self.assertEqual(result['available_spots'], 1)
        self.assertEqual(len(result['waitlist_offer_entry_ids']), 1)
        offered = self.db.get(WaitingListEntry, result['waitlist_offer_entry_ids'][0])
        self.assertEqual(offered.student_id, self.student_2)

    def test_deactivate_only_empty_slots(self):
        busy = self.make_slot(start=time(9, 0))
        empty = self.make_slot(start=time(13, 0))
        create_booking(self.db, self.student(self.student_1), slot_id=busy, time_provider=self.clock)

        with self.assertRaises(ConflictError):
            deactivate_slot(self.db, self.teacher(), busy, time_provider=self.clock)
        with self.assertRaises(AuthorizationError):
            deactivate_slot(self.db, self.teacher(self.teacher_b), empty, time_provider=self.clock)

        result = deactivate_slot(self.db, self.teacher(), empty, time_provider=self.clock)
        self.assertFalse(result['is_active'])
        listed = [row.slot_id for row in compute_availability(self.db, include_full=True)]
        self.assertEqual(listed, [busy])


if __name__ == '__main__':
    unittest.main()
