import unittest
from datetime import date, datetime, time

from booking_test_support import BookingDbTestCase

from tutoring_booking.core.errors import AuthorizationError, BusinessRuleError, ConflictError, NotFoundError, ValidationError
from tutoring_booking.models import NotificationOutbox, WaitingListEntry
from tutoring_booking.services.booking_service import cancel_booking, create_booking
from tutoring_booking.services.waiting_list_service import (
    get_waiting_position,
    join_waiting_list,
    leave_waiting_list,
    list_waiting_list,
)


class WaitingListTests(BookingDbTestCase):
    db_name = 'test_waiting_list.db'

    def _full_slot(self, **kwargs) -> tuple[int, int]:
        slot_id = self.make_slot(**kwargs)
        booking = create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        return slot_id, booking['id']

    def test_join_only_when_slot_is_full(self):
        open_slot = self.make_slot(start=time(14, 0))
        with self.assertRaises(ValidationError):
            join_waiting_list(self.db, self.student(self.student_2), open_slot, time_provider=self.clock)

        full_slot, _ = self._full_slot()
        entry = join_waiting_list(self.db, self.student(self.student_2), full_slot, time_provider=self.clock)
        self.assertEqual(entry['position'], 1)
        self.assertEqual(entry['expires_at'], '2026-03-11T09:00:00')

    def test_positions_follow_join_order(self):
        slot_id, _ = self._full_slot()
        join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        self.clock.advance(minutes=5)
        second = join_waiting_list(self.db, self.student(self.student_3), slot_id, time_provider=self.clock)
        self.assertEqual(second['position'], 2)

        leave_waiting_list(self.db, self.student(self.student_2), slot_id)
        self.assertEqual(get_waiting_position(self.db, self.student_3, slot_id, time_provider=self.clock), 1)
        self.assertIsNone(get_waiting_position(self.db, self.student_2, slot_id, time_provider=self.clock))

    def test_cannot_join_twice_or_wait_for_own_booking(self):
        slot_id, _ = self._full_slot()
        join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        with self.assertRaises(ConflictError):
            join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        with self.assertRaises(BusinessRuleError) as ctx:
            join_waiting_list(self.db, self.student(self.student_1), slot_id, time_provider=self.clock)
        self.assertEqual(ctx.exception.rule_kind, 'DUPLICATE_BOOKING')

    def test_expired_entry_is_ignored_and_can_be_replaced(self):
        slot_id, _ = self._full_slot()
        join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        self.clock.advance(hours=24, seconds=1)
        self.assertIsNone(get_waiting_position(self.db, self.student_2, slot_id, time_provider=self.clock))

        again = join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        self.assertEqual(again['position'], 1)
        self.assertEqual(self.db.query(WaitingListEntry).count(), 1)

    def test_freed_seat_is_offered_to_first_in_line(self):
        slot_id, booking_id = self._full_slot(slot_date=date(2026, 3, 14))
        first = join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        join_waiting_list(self.db, self.student(self.student_3), slot_id, time_provider=self.clock)

        result = cancel_booking(self.db, self.student(self.student_1), booking_id, time_provider=self.clock)

        self.assertEqual(result['waitlist_offer_entry_id'], first['id'])
        offers = self.db.query(NotificationOutbox).filter(NotificationOutbox.event_type == 'waitlist_offer').all()
        self.assertEqual([row.waiting_entry_id for row in offers], [first['id']])

        booked = create_booking(self.db, self.student(self.student_2), slot_id=slot_id, time_provider=self.clock)
        self.assertEqual(booked['status'], 'CONFIRMED')
        self.assertIsNone(get_waiting_position(self.db, self.student_2, slot_id, time_provider=self.clock))

    def test_late_cancel_does_not_offer_the_blocked_seat(self):
        slot_id, booking_id = self._full_slot(slot_date=date(2026, 3, 11), start=time(9, 0))
        join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        self.clock.set(datetime(2026, 3, 10, 12, 0))

        result = cancel_booking(self.db, self.student(self.student_1), booking_id, time_provider=self.clock)

        self.assertTrue(result['slot_blocked'])
        self.assertIsNone(result['waitlist_offer_entry_id'])

    def test_listing_is_for_slot_managers(self):
        slot_id, _ = self._full_slot()
        join_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)
        join_waiting_list(self.db, self.branch_admin(), slot_id, student_id=self.student_3, time_provider=self.clock)

        rows = list_waiting_list(self.db, self.teacher(), slot_id, time_provider=self.clock)
        self.assertEqual([(row['student_id'], row['position']) for row in rows], [(self.student_2, 1), (self.student_3, 2)])
        with self.assertRaises(AuthorizationError):
            list_waiting_list(self.db, self.student(self.student_2), slot_id, time_provider=self.clock)

    def test_leave_without_entry_is_not_found(self):
        slot_id, _ = self._full_slot()
        with self.assertRaises(NotFoundError):
            leave_waiting_list(self.db, self.student(self.student_2), slot_id)


if __name__ == '__main__':
    unittest.main()
