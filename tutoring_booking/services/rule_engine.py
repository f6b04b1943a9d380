"""Business rules for booking admission.

Each rule is a pure function of an already-loaded context and returns a
``RuleResult``; nothing here touches the database or the clock. Rule sets are
evaluated in a fixed order and stop at the first violation.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Sequence

from tutoring_booking.services.system_config_service import SystemConfig


PAST_SLOT_BOOKING = 'PAST_SLOT_BOOKING'
SLOT_CAPACITY_EXCEEDED = 'SLOT_CAPACITY_EXCEEDED'
DUPLICATE_BOOKING = 'DUPLICATE_BOOKING'
MONTHLY_BOOKING_LIMIT = 'MONTHLY_BOOKING_LIMIT'
CROSS_BRANCH_DISABLED = 'CROSS_BRANCH_DISABLED'
SLOT_BLOCKED = 'SLOT_BLOCKED'
CANCELLATION_TIME_LIMIT = 'CANCELLATION_TIME_LIMIT'
INVALID_BOOKING_STATUS = 'INVALID_BOOKING_STATUS'


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    kind: str | None = None
    message: str = ''
    detail: dict[str, Any] = field(default_factory=dict)


PASS = RuleResult(passed=True)


def violation(kind: str, message: str, **detail: Any) -> RuleResult:
    return RuleResult(passed=False, kind=kind, message=message, detail=detail)


@dataclass(frozen=True)
class AdmissionContext:
    now: datetime
    config: SystemConfig
    slot_id: int
    slot_branch_id: int
    slot_date: date
    slot_starts_at: datetime
    capacity: int
    booked_count: int
    student_id: int
    student_branch_id: int | None
    duplicate_booking_id: int | None = None
    monthly_booking_id: int | None = None
    monthly_bypass_active: bool = False
    block_reason: str | None = None


@dataclass(frozen=True)
class CancellationContext:
    now: datetime
    slot_starts_at: datetime
    cancellation_hours: int


def month_range(day: date) -> tuple[date, date]:
    last_day = calendar.monthrange(day.year, day.month)[1]
    return date(day.year, day.month, 1), date(day.year, day.month, last_day)


def hours_until(now: datetime, starts_at: datetime) -> float:
    return (starts_at - now).total_seconds() / 3600.0


def not_in_past(ctx: AdmissionContext) -> RuleResult:
    if ctx.slot_starts_at < ctx.now:
        return violation(
            PAST_SLOT_BOOKING,
            'Cannot book slots in the past',
            slot_id=ctx.slot_id,
            slot_starts_at=ctx.slot_starts_at.isoformat(),
        )
    return PASS


def slot_not_blocked(ctx: AdmissionContext) -> RuleResult:
    if ctx.block_reason is not None:
        return violation(
            SLOT_BLOCKED,
            f'Slot is blocked: {ctx.block_reason}',
            slot_id=ctx.slot_id,
            reason=ctx.block_reason,
        )
    return PASS


def capacity_available(ctx: AdmissionContext) -> RuleResult:
    if ctx.booked_count >= ctx.capacity:
        return violation(
            SLOT_CAPACITY_EXCEEDED,
            f'Slot is fully booked ({ctx.booked_count}/{ctx.capacity})',
            slot_id=ctx.slot_id,
            booked_count=ctx.booked_count,
            capacity=ctx.capacity,
        )
    return PASS


def no_duplicate_booking(ctx: AdmissionContext) -> RuleResult:
    if ctx.duplicate_booking_id is not None:
        return violation(
            DUPLICATE_BOOKING,
            'Student already has a booking for this slot',
            slot_id=ctx.slot_id,
            booking_id=ctx.duplicate_booking_id,
        )
    return PASS


def cross_branch_allowed(ctx: AdmissionContext) -> RuleResult:
    if ctx.student_branch_id is None or int(ctx.student_branch_id) == int(ctx.slot_branch_id):
        return PASS
    if ctx.config.allow_cross_branch_booking:
        return PASS
    return violation(
        CROSS_BRANCH_DISABLED,
        'Cross-branch booking is currently disabled',
        student_branch_id=ctx.student_branch_id,
        slot_branch_id=ctx.slot_branch_id,
    )


def monthly_limit(ctx: AdmissionContext) -> RuleResult:
    if ctx.monthly_booking_id is None or ctx.monthly_bypass_active:
        return PASS
    month_start, month_end = month_range(ctx.slot_date)
    return violation(
        MONTHLY_BOOKING_LIMIT,
        'Student already has a booking this month across all branches',
        month_start=month_start.isoformat(),
        month_end=month_end.isoformat(),
        existing_booking_id=ctx.monthly_booking_id,
    )


def cancellation_window(ctx: CancellationContext) -> RuleResult:
    remaining = hours_until(ctx.now, ctx.slot_starts_at)
    if remaining < ctx.cancellation_hours:
        return violation(
            CANCELLATION_TIME_LIMIT,
            f'Bookings cannot be changed within {ctx.cancellation_hours} hours of the scheduled time',
            hours_until_slot=round(remaining, 4),
            cancellation_hours=ctx.cancellation_hours,
            slot_starts_at=ctx.slot_starts_at.isoformat(),
        )
    return PASS


Rule = Callable[[Any], RuleResult]

CREATE_BOOKING_RULES: tuple[Rule, ...] = (
    not_in_past,
    slot_not_blocked,
    capacity_available,
    no_duplicate_booking,
    cross_branch_allowed,
    monthly_limit,
)


def evaluate(ctx: Any, rules: Sequence[Rule]) -> RuleResult:
    for rule in rules:
        result = rule(ctx)
        if not result.passed:
            return result
    return PASS
