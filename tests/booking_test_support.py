import tempfile
import unittest
from datetime import date, datetime, time, timedelta
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from tutoring_booking.core.slot_lock import MemoryLockBackend, set_lock_backend
from tutoring_booking.core.time_provider import APP_ZONEINFO, TimeProvider
from tutoring_booking.db import Base, build_engine
from tutoring_booking.models import Branch, Role, Slot, User
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.observability_counters import clear_observability_events


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self.set(frozen_dt)

    def set(self, frozen_dt: datetime) -> None:
        self._frozen_dt = frozen_dt if frozen_dt.tzinfo else frozen_dt.replace(tzinfo=APP_ZONEINFO)

    def advance(self, **delta) -> None:
        self._frozen_dt = self._frozen_dt + timedelta(**delta)

    def now(self) -> datetime:
        return self._frozen_dt


class BookingDbTestCase(unittest.TestCase):
    """Temp SQLite database per class; every test starts from two branches and a fixed cast of users."""

    db_name = 'test_booking.db'
    start_at = datetime(2026, 3, 10, 9, 0, 0)

    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / cls.db_name
        cls._engine = build_engine(f"sqlite:///{db_path}")
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        set_lock_backend(MemoryLockBackend())
        clear_observability_events()
        self.clock = FixedTimeProvider(self.start_at)
        db = self._session_factory()
        try:
            for table in reversed(Base.metadata.sorted_tables):
                db.execute(table.delete())
            db.commit()

            branch_a = Branch(name='North')
            branch_b = Branch(name='South')
            db.add_all([branch_a, branch_b])
            db.commit()
            self.branch_a = int(branch_a.id)
            self.branch_b = int(branch_b.id)

            def _user(name, role, branch_id):
                row = User(name=name, role=role.value, branch_id=branch_id)
                db.add(row)
                db.commit()
                return int(row.id)

            self.teacher_a = _user('Teacher North', Role.TEACHER, self.branch_a)
            self.teacher_b = _user('Teacher South', Role.TEACHER, self.branch_b)
            self.student_1 = _user('Asha', Role.STUDENT, self.branch_a)
            self.student_2 = _user('Ravi', Role.STUDENT, self.branch_a)
            self.student_3 = _user('Meera', Role.STUDENT, self.branch_a)
            self.student_4 = _user('Kabir', Role.STUDENT, self.branch_b)
            self.admin_a = _user('Admin North', Role.BRANCH_ADMIN, self.branch_a)
            self.super_admin_id = _user('Owner', Role.SUPER_ADMIN, None)
        finally:
            db.close()
        self.db = self._session_factory()

    def tearDown(self):
        self.db.close()

    def add_student(self, name: str, branch_id: int | None = None) -> int:
        row = User(name=name, role=Role.STUDENT.value, branch_id=branch_id or self.branch_a)
        self.db.add(row)
        self.db.commit()
        return int(row.id)

    def make_slot(
        self,
        *,
        slot_date: date | None = None,
        start: time = time(10, 0),
        capacity: int = 1,
        branch_id: int | None = None,
        teacher_id: int | None = None,
        days_ahead: int = 5,
    ) -> int:
        day = slot_date or (self.start_at.date() + timedelta(days=days_ahead))
        slot = Slot(
            teacher_id=teacher_id or self.teacher_a,
            branch_id=branch_id or self.branch_a,
            date=day,
            start_time=start,
            end_time=time((start.hour + 1) % 24, start.minute),
            capacity=capacity,
            is_active=True,
        )
        self.db.add(slot)
        self.db.commit()
        return int(slot.id)

    def student(self, user_id: int, branch_id: int | None = None) -> Actor:
        return Actor(user_id=user_id, role=Role.STUDENT.value, branch_id=branch_id or self.branch_a)

    def teacher(self, user_id: int | None = None) -> Actor:
        return Actor(user_id=user_id or self.teacher_a, role=Role.TEACHER.value, branch_id=self.branch_a)

    def branch_admin(self) -> Actor:
        return Actor(user_id=self.admin_a, role=Role.BRANCH_ADMIN.value, branch_id=self.branch_a)

    def super_admin(self) -> Actor:
        return Actor(user_id=self.super_admin_id, role=Role.SUPER_ADMIN.value)

