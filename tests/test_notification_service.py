import json
import threading
import time
import unittest
from unittest.mock import patch

import httpx
from booking_test_support import BookingDbTestCase

from tutoring_booking.config import settings
from tutoring_booking.models import NotificationOutbox
from tutoring_booking.services.booking_service import cancel_booking, create_booking
from tutoring_booking.services.notification_service import (
    BookingNotifier,
    HttpNotifier,
    LogNotifier,
    build_notifier,
    dispatch_pending_notifications,
    run_post_commit_dispatch,
)
from tutoring_booking.services.observability_counters import count_observability_events


class RecordingNotifier(BookingNotifier):
    def __init__(self):
        self.calls = []

    def send_booking_confirmation(self, booking_id):
        self.calls.append(('confirmed', booking_id))

    def send_booking_cancellation(self, booking_id, reason):
        self.calls.append(('cancelled', booking_id, reason))

    def send_teacher_cancellation_batch(self, slot_id, reason):
        self.calls.append(('teacher_cancelled', slot_id, reason))

    def send_waitlist_offer(self, entry_id):
        self.calls.append(('waitlist_offer', entry_id))


class SlowRecordingNotifier(RecordingNotifier):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def send_booking_confirmation(self, booking_id):
        time.sleep(self.delay)
        super().send_booking_confirmation(booking_id)


class NotificationOutboxTests(BookingDbTestCase):
    db_name = 'test_notifications.db'

    def test_rule_failure_leaves_no_outbox_row(self):
        slot_id = self.make_slot()
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        with self.assertRaises(Exception):
            create_booking(self.db, self.student(self.student_2), slot_id=slot_id, time_provider=self.clock)
        self.assertEqual(self.db.query(NotificationOutbox).count(), 1)

    def test_dispatch_delivers_in_order_and_marks_sent(self):
        slot_id = self.make_slot()
        booking = create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        cancel_booking(self.db, self.student(self.student_1), booking['id'], reason='Sick', time_provider=self.clock)
        notifier = RecordingNotifier()

        summary = dispatch_pending_notifications(self.db, notifier, time_provider=self.clock)

        self.assertEqual(summary, {'sent': 2, 'retrying': 0, 'failed': 0})
        self.assertEqual(notifier.calls, [('confirmed', booking['id']), ('cancelled', booking['id'], 'Sick')])
        rows = self.db.query(NotificationOutbox).all()
        self.assertTrue(all(row.status == 'sent' and row.attempts == 1 for row in rows))
        self.assertEqual(dispatch_pending_notifications(self.db, notifier, time_provider=self.clock)['sent'], 0)

    def test_http_failures_retry_then_give_up(self):
        slot_id = self.make_slot()
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        transport = httpx.MockTransport(lambda request: httpx.Response(503, json={'detail': 'down'}))
        notifier = HttpNotifier('http://notify.test', timeout_seconds=1.0, transport=transport)

        with patch.object(settings, 'outbox_max_attempts', 2):
            first = dispatch_pending_notifications(self.db, notifier, time_provider=self.clock)
            second = dispatch_pending_notifications(self.db, notifier, time_provider=self.clock)

        self.assertEqual(first, {'sent': 0, 'retrying': 1, 'failed': 0})
        self.assertEqual(second, {'sent': 0, 'retrying': 0, 'failed': 1})
        row = self.db.query(NotificationOutbox).one()
        self.assertEqual(row.status, 'failed')
        self.assertEqual(row.attempts, 2)
        self.assertIn('HTTPStatusError', row.last_error)
        self.assertEqual(count_observability_events('notification_delivery_failed'), 2)

    def test_http_notifier_posts_event_payload(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(202)

        notifier = HttpNotifier('http://notify.test/', timeout_seconds=1.0, transport=httpx.MockTransport(handler))
        notifier.send_booking_cancellation(12, 'Late cancellation by student')
        notifier.send_waitlist_offer(3)
        self.assertEqual(
            seen,
            [
                ('/events', {'event': 'booking_cancelled', 'payload': {'booking_id': 12, 'reason': 'Late cancellation by student'}}),
                ('/events', {'event': 'waitlist_offer', 'payload': {'waiting_entry_id': 3}}),
            ],
        )

    def test_post_commit_dispatch_uses_its_own_session(self):
        slot_id = self.make_slot()
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        notifier = RecordingNotifier()
        run_post_commit_dispatch(self._session_factory, notifier)
        self.assertEqual(len(notifier.calls), 1)
        self.db.expire_all()
        self.assertEqual(self.db.query(NotificationOutbox).one().status, 'sent')

    def test_build_notifier_follows_mode(self):
        self.assertIsInstance(build_notifier(), LogNotifier)
        with patch.object(settings, 'notifier_mode', 'http'):
            self.assertIsInstance(build_notifier(), HttpNotifier)

    def test_concurrent_dispatchers_deliver_each_row_once(self):
        slot_id = self.make_slot()
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        notifier = SlowRecordingNotifier(delay=0.3)
        errors = []

        def worker():
            db = self._session_factory()
            try:
                dispatch_pending_notifications(db, notifier, time_provider=self.clock)
            except Exception as exc:
                errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(len(notifier.calls), 1)
        self.db.expire_all()
        row = self.db.query(NotificationOutbox).one()
        self.assertEqual((row.status, row.attempts), ('sent', 1))

    def test_stale_claim_is_picked_up_after_the_lease(self):
        slot_id = self.make_slot()
        create_booking(self.db, self.student(self.student_1), slot_id=slot_id, time_provider=self.clock)
        row = self.db.query(NotificationOutbox).one()
        row.status = 'sending'
        row.attempts = 1
        row.last_attempt_at = self.clock.local_now()
        self.db.commit()
        notifier = RecordingNotifier()

        with patch.object(settings, 'outbox_claim_lease_seconds', 300):
            self.assertEqual(dispatch_pending_notifications(self.db, notifier, time_provider=self.clock)['sent'], 0)
            self.clock.advance(seconds=301)
            self.assertEqual(dispatch_pending_notifications(self.db, notifier, time_provider=self.clock)['sent'], 1)

        self.assertEqual(len(notifier.calls), 1)
        self.db.expire_all()
        self.assertEqual(self.db.query(NotificationOutbox).one().attempts, 2)


if __name__ == '__main__':
    unittest.main()
