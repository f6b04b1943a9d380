import unittest
from datetime import timedelta

from booking_test_support import BookingDbTestCase
from fastapi.testclient import TestClient

from tutoring_booking.core.time_provider import TimeProvider
from tutoring_booking.db import get_db
from tutoring_booking.main import app
from tutoring_booking.models import NotificationOutbox
from tutoring_booking.services.rate_limit_service import MemoryRateLimitStore, RateLimiter


class BookingApiTests(BookingDbTestCase):
    db_name = 'test_booking_api.db'

    @classmethod
    def setUpClass(cls):
        super().setUpClass()

        def override_get_db():
            db = cls._session_factory()
            try:
                yield db
            finally:
                db.close()

        cls._orig_session_factory = app.state.session_factory
        cls._orig_rate_limiter = app.state.rate_limiter
        app.dependency_overrides[get_db] = override_get_db
        app.state.session_factory = cls._session_factory
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls):
        app.dependency_overrides.pop(get_db, None)
        app.state.session_factory = cls._orig_session_factory
        app.state.rate_limiter = cls._orig_rate_limiter
        cls.client.close()
        super().tearDownClass()

    def setUp(self):
        super().setUp()
        app.state.rate_limiter = RateLimiter(MemoryRateLimitStore(), max_requests=3, window_seconds=60)
        # Routes read the real clock, so slots are placed relative to today.
        self.slot_day = TimeProvider().local_now().date() + timedelta(days=3)

    def _headers(self, user_id: int, role: str, branch_id: int | None = None) -> dict:
        headers = {'X-User-Id': str(user_id), 'X-User-Role': role}
        if branch_id is not None:
            headers['X-Branch-Id'] = str(branch_id)
        return headers

    def _student_headers(self, student_id: int) -> dict:
        return self._headers(student_id, 'STUDENT', self.branch_a)

    def test_requests_without_identity_are_unauthorized(self):
        self.assertEqual(self.client.get('/api/bookings').status_code, 401)
        response = self.client.get('/api/bookings', headers={'X-User-Id': 'abc', 'X-User-Role': 'STUDENT'})
        self.assertEqual(response.status_code, 401)
        response = self.client.get('/api/bookings', headers={'X-User-Id': '3', 'X-User-Role': 'JANITOR'})
        self.assertEqual(response.status_code, 401)

    def test_book_then_cancel_round_trip(self):
        slot_id = self.make_slot(slot_date=self.slot_day, capacity=2)
        created = self.client.post(
            '/api/bookings', json={'slot_id': slot_id}, headers=self._student_headers(self.student_1)
        )
        self.assertEqual(created.status_code, 201)
        body = created.json()
        self.assertEqual(body['status'], 'CONFIRMED')
        self.assertIn('X-Request-Id', created.headers)

        listed = self.client.get('/api/bookings', headers=self._student_headers(self.student_1)).json()
        self.assertEqual([row['id'] for row in listed['items']], [body['id']])

        cancelled = self.client.post(
            f"/api/bookings/{body['id']}/cancel", json={'reason': 'Travel'}, headers=self._student_headers(self.student_1)
        )
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()['cancellation_reason'], 'Travel')

        again = self.client.post(
            f"/api/bookings/{body['id']}/cancel", json={}, headers=self._student_headers(self.student_1)
        )
        self.assertEqual(again.status_code, 400)
        payload = again.json()
        self.assertEqual(payload['code'], 'BUSINESS_RULE_ERROR')
        self.assertEqual(payload['rule_kind'], 'INVALID_BOOKING_STATUS')

        self.db.expire_all()
        statuses = {row.status for row in self.db.query(NotificationOutbox).all()}
        self.assertEqual(statuses, {'sent'})

    def test_full_slot_returns_conflict_with_rule_kind(self):
        slot_id = self.make_slot(slot_date=self.slot_day, capacity=1)
        self.client.post('/api/bookings', json={'slot_id': slot_id}, headers=self._student_headers(self.student_1))
        response = self.client.post(
            '/api/bookings', json={'slot_id': slot_id}, headers=self._student_headers(self.student_2)
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['rule_kind'], 'SLOT_CAPACITY_EXCEEDED')

    def test_other_students_booking_is_not_found(self):
        slot_id = self.make_slot(slot_date=self.slot_day)
        booking = self.client.post(
            '/api/bookings', json={'slot_id': slot_id}, headers=self._student_headers(self.student_1)
        ).json()
        response = self.client.get(f"/api/bookings/{booking['id']}", headers=self._student_headers(self.student_2))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['code'], 'NOT_FOUND')

    def test_rate_limit_returns_retry_after(self):
        headers = self._student_headers(self.student_1)
        for _ in range(3):
            self.client.post('/api/bookings', json={'slot_id': 999}, headers=headers)
        response = self.client.post('/api/bookings', json={'slot_id': 999}, headers=headers)
        self.assertEqual(response.status_code, 429)
        self.assertIn(int(response.headers['Retry-After']), range(1, 61))
        self.assertEqual(response.json()['code'], 'RATE_LIMIT_ERROR')

    def test_availability_hides_full_slots_from_students(self):
        open_slot = self.make_slot(slot_date=self.slot_day, capacity=2)
        full_slot = self.make_slot(slot_date=self.slot_day, capacity=1, teacher_id=self.teacher_b, branch_id=self.branch_b)
        self.client.post('/api/bookings', json={'slot_id': full_slot}, headers=self._student_headers(self.student_1))

        student_view = self.client.get(
            '/api/slots/availability', params={'include_full': 'true'}, headers=self._student_headers(self.student_2)
        ).json()
        self.assertEqual([row['slot_id'] for row in student_view['items']], [open_slot])

        admin_view = self.client.get(
            '/api/slots/availability',
            params={'include_full': 'true'},
            headers=self._headers(self.super_admin_id, 'SUPER_ADMIN'),
        ).json()
        self.assertEqual({row['slot_id'] for row in admin_view['items']}, {open_slot, full_slot})

    def test_config_update_is_super_admin_only(self):
        denied = self.client.put(
            '/api/system/config', json={'cancellation_hours': 12}, headers=self._student_headers(self.student_1)
        )
        self.assertEqual(denied.status_code, 403)
        allowed = self.client.put(
            '/api/system/config',
            json={'cancellation_hours': 12},
            headers=self._headers(self.super_admin_id, 'SUPER_ADMIN'),
        )
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()['cancellation_hours'], 12)
        current = self.client.get('/api/system/config', headers=self._student_headers(self.student_1)).json()
        self.assertEqual(current['version'], 1)

    def test_health(self):
        self.assertEqual(self.client.get('/health').json(), {'status': 'ok'})


if __name__ == '__main__':
    unittest.main()
