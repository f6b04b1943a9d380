from datetime import date, time

from pydantic import BaseModel, Field


class BookingCreateRequest(BaseModel):
    slot_id: int
    student_id: int | None = None
    idempotency_key: str | None = Field(default=None, max_length=80)


class BookingCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
    on_behalf_of_student: bool = False
    admin_override: bool = False


class BookingRescheduleRequest(BaseModel):
    new_slot_id: int


class AttendanceMarkRequest(BaseModel):
    attended: bool


class SlotCreateRequest(BaseModel):
    branch_id: int
    date: date
    start_time: time
    end_time: time
    capacity: int = Field(default=1, gt=0)
    teacher_id: int | None = None


class SlotCapacityRequest(BaseModel):
    capacity: int = Field(gt=0)


class TeacherCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
    issue_priority_grants: bool = True


class PriorityConsumeRequest(BaseModel):
    new_slot_id: int
    student_id: int | None = None


class PriorityGrantRequest(BaseModel):
    student_id: int
    original_slot_id: int
    original_booking_id: int
    branch_id: int | None = None
    reason: str = ''


class ForceBookingRequest(BaseModel):
    slot_id: int
    student_id: int
    reason: str = Field(min_length=1, max_length=255)


class UnblockSlotRequest(BaseModel):
    reason: str = ''


class MonthlyBypassRequest(BaseModel):
    student_id: int
    reason: str = Field(min_length=1, max_length=255)


class EmergencyRescheduleRequest(BaseModel):
    booking_id: int
    new_slot_id: int
    reason: str = Field(min_length=1, max_length=255)


class SystemConfigUpdateRequest(BaseModel):
    max_bookings_per_month: int | None = None
    cancellation_hours: int | None = None
    allow_cross_branch_booking: bool | None = None


class WaitingListRequest(BaseModel):
    slot_id: int
    student_id: int | None = None
