from datetime import date, datetime, time
from enum import Enum
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tutoring_booking.db import Base


class Role(str, Enum):
    STUDENT = 'STUDENT'
    TEACHER = 'TEACHER'
    BRANCH_ADMIN = 'BRANCH_ADMIN'
    SUPER_ADMIN = 'SUPER_ADMIN'


class BookingStatus(str, Enum):
    CONFIRMED = 'CONFIRMED'
    CANCELLED = 'CANCELLED'
    COMPLETED = 'COMPLETED'
    NO_SHOW = 'NO_SHOW'


ACTIVE_BOOKING_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
_ACTIVE_STATUS_SQL = "status IN ('CONFIRMED', 'COMPLETED')"


class Branch(Base):
    __tablename__ = 'branches'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), default='')
    phone: Mapped[str | None] = mapped_column(String(20), unique=True, nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.STUDENT.value, index=True)
    branch_id: Mapped[int | None] = mapped_column(ForeignKey('branches.id'), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    branch: Mapped['Branch | None'] = relationship('Branch')


class Slot(Base):
    __tablename__ = 'slots'
    __table_args__ = (
        UniqueConstraint('teacher_id', 'date', 'start_time', name='uq_slots_teacher_date_start'),
        Index('ix_slots_branch_date_start', 'branch_id', 'date', 'start_time'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey('branches.id'), index=True)
    date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    capacity: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    bookings: Mapped[list['Booking']] = relationship('Booking', back_populates='slot')

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)


class Booking(Base):
    __tablename__ = 'bookings'
    __table_args__ = (
        # At most one active booking per (student, slot); cancelled rows are history.
        Index(
            'uq_bookings_active_student_slot',
            'student_id',
            'slot_id',
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_SQL),
            postgresql_where=text(_ACTIVE_STATUS_SQL),
        ),
        Index('ix_bookings_slot_status', 'slot_id', 'status'),
        Index('ix_bookings_student_status', 'student_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    slot_id: Mapped[int] = mapped_column(ForeignKey('slots.id'), index=True)
    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.CONFIRMED.value, index=True)
    booked_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attended: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(80), unique=True, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    slot: Mapped['Slot'] = relationship('Slot', back_populates='bookings')
    student: Mapped['User'] = relationship('User')


class BlockedSlot(Base):
    __tablename__ = 'blocked_slots'

    slot_id: Mapped[int] = mapped_column(ForeignKey('slots.id'), primary_key=True)
    reason: Mapped[str] = mapped_column(String(255), default='')
    blocked_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    blocked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_booking_id: Mapped[int | None] = mapped_column(ForeignKey('bookings.id'), nullable=True)


class PriorityRescheduleGrant(Base):
    __tablename__ = 'priority_reschedule_grants'

    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), primary_key=True)
    original_slot_id: Mapped[int] = mapped_column(ForeignKey('slots.id'))
    original_booking_id: Mapped[int] = mapped_column(ForeignKey('bookings.id'))
    branch_id: Mapped[int] = mapped_column(ForeignKey('branches.id'))
    reason: Mapped[str] = mapped_column(String(255), default='')
    granted_by: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class MonthlyBypassGrant(Base):
    __tablename__ = 'monthly_bypass_grants'

    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), primary_key=True)
    reason: Mapped[str] = mapped_column(String(255), default='')
    granted_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class SystemConfigRecord(Base):
    __tablename__ = 'system_configs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    version: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    max_bookings_per_month: Mapped[int] = mapped_column(Integer, default=4)
    cancellation_hours: Mapped[int] = mapped_column(Integer, default=24)
    allow_cross_branch_booking: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    actor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    actor_role: Mapped[str] = mapped_column(String(20), default='')
    actor_branch_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(60), index=True)
    entity_type: Mapped[str] = mapped_column(String(40), default='')
    entity_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    old_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str] = mapped_column(String(255), default='')
    outcome: Mapped[str] = mapped_column(String(20), default='success', index=True)  # success | failed
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class NotificationOutbox(Base):
    __tablename__ = 'notification_outbox'
    __table_args__ = (
        Index('ix_notification_outbox_status_created', 'status', 'created_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    event_type: Mapped[str] = mapped_column(String(40), index=True)
    booking_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    slot_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    waiting_entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(String(255), default='')
    status: Mapped[str] = mapped_column(String(20), default='pending', index=True)  # pending | sending | sent | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class RateLimitState(Base):
    __tablename__ = 'rate_limit_states'
    __table_args__ = (
        UniqueConstraint('scope_key', 'action_name', name='uq_rate_limit_scope_action'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    scope_key: Mapped[str] = mapped_column(String(120), default='', index=True)
    action_name: Mapped[str] = mapped_column(String(80), default='', index=True)
    window_start: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    request_count: Mapped[int] = mapped_column(Integer, default=0)


class WaitingListEntry(Base):
    __tablename__ = 'waiting_list_entries'
    __table_args__ = (
        UniqueConstraint('student_id', 'slot_id', name='uq_waiting_list_student_slot'),
        Index('ix_waiting_list_slot_position', 'slot_id', 'position'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    slot_id: Mapped[int] = mapped_column(ForeignKey('slots.id'), index=True)
    position: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    offered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
