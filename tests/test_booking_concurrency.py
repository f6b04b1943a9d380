import threading
import unittest
from datetime import date, timedelta

from booking_test_support import BookingDbTestCase

from tutoring_booking.core.errors import BookingEngineError, NotFoundError
from tutoring_booking.models import Booking, PriorityRescheduleGrant
from tutoring_booking.services.booking_repository import count_bookings
from tutoring_booking.services.booking_service import create_booking
from tutoring_booking.services.priority_reschedule_service import consume_priority_grant


class BookingConcurrencyTests(BookingDbTestCase):
    db_name = 'test_booking_concurrency.db'

    def _race(self, workers):
        barrier = threading.Barrier(len(workers))
        successes: list[dict] = []
        failures: list[Exception] = []
        unexpected: list[Exception] = []
        lock = threading.Lock()

        def run(worker):
            db = self._session_factory()
            try:
                barrier.wait(timeout=5)
                result = worker(db)
                with lock:
                    successes.append(result)
            except BookingEngineError as exc:
                with lock:
                    failures.append(exc)
            except Exception as exc:  # pragma: no cover - test diagnostic path
                with lock:
                    unexpected.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=run, args=(worker,)) for worker in workers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        self.assertFalse(unexpected, f'unexpected={unexpected}')
        return successes, failures

    def _students(self, count: int) -> list[int]:
        return [self.add_student(f'Racer {index}') for index in range(count)]

    def test_single_seat_goes_to_exactly_one_of_many(self):
        slot_id = self.make_slot(capacity=1)
        students = self._students(8)

        def worker_for(student_id):
            return lambda db: create_booking(db, self.student(student_id), slot_id=slot_id, time_provider=self.clock)

        successes, failures = self._race([worker_for(student_id) for student_id in students])

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 7)
        self.assertEqual(count_bookings(self.db, slot_id), 1)

    def test_capacity_never_exceeded_under_contention(self):
        slot_id = self.make_slot(capacity=3)
        students = self._students(10)

        def worker_for(student_id):
            return lambda db: create_booking(db, self.student(student_id), slot_id=slot_id, time_provider=self.clock)

        successes, failures = self._race([worker_for(student_id) for student_id in students])

        self.assertEqual(len(successes), 3)
        self.assertEqual(len(failures), 7)
        self.assertEqual(count_bookings(self.db, slot_id), 3)

    def test_same_student_same_slot_books_once(self):
        slot_id = self.make_slot(capacity=5)

        def worker(db):
            return create_booking(db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)

        successes, failures = self._race([worker for _ in range(4)])

        self.assertEqual(len(successes), 1)
        self.assertEqual(self.db.query(Booking).filter(Booking.student_id == self.student_1).count(), 1)

    def test_priority_grant_consumed_exactly_once(self):
        original = self.make_slot(slot_date=date(2026, 3, 12))
        first_choice = self.make_slot(slot_date=date(2026, 3, 20))
        second_choice = self.make_slot(slot_date=date(2026, 3, 21))
        booking = Booking(student_id=self.student_1, slot_id=original, status='CANCELLED', booked_at=self.start_at)
        self.db.add(booking)
        self.db.commit()
        now = self.clock.local_now()
        self.db.add(
            PriorityRescheduleGrant(
                student_id=self.student_1,
                original_slot_id=original,
                original_booking_id=booking.id,
                branch_id=self.branch_a,
                reason='Teacher unavailable',
                created_at=now,
                expires_at=now + timedelta(days=7),
            )
        )
        self.db.commit()

        def worker_for(slot_id):
            return lambda db: consume_priority_grant(db, self.student(self.student_1), slot_id, time_provider=self.clock)

        successes, failures = self._race([worker_for(first_choice), worker_for(second_choice)])

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], NotFoundError)
        self.assertIsNone(self.db.get(PriorityRescheduleGrant, self.student_1))
        confirmed = self.db.query(Booking).filter(Booking.student_id == self.student_1, Booking.status == 'CONFIRMED').all()
        self.assertEqual(len(confirmed), 1)


if __name__ == '__main__':
    unittest.main()
