from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from tutoring_booking.core.errors import AuthorizationError, NotFoundError
from tutoring_booking.models import Booking, Role, Slot


STAFF_ROLES = frozenset({Role.TEACHER.value, Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value})
ADMIN_ROLES = frozenset({Role.BRANCH_ADMIN.value, Role.SUPER_ADMIN.value})


@dataclass(frozen=True)
class Actor:
    """Authorization context handed in by the calling layer; trusted as-is."""

    user_id: int
    role: str
    branch_id: int | None = None

    @property
    def is_student(self) -> bool:
        return self.role == Role.STUDENT.value

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN.value

    def as_dict(self) -> dict:
        return {'user_id': self.user_id, 'role': self.role, 'branch_id': self.branch_id}


def require_role(actor: Actor, allowed_roles: Iterable[str]) -> None:
    normalized = {str(role).strip().upper() for role in allowed_roles}
    if actor.role not in normalized:
        raise AuthorizationError(f'Role {actor.role} may not perform this action')


def assert_branch_scope(actor: Actor, branch_id: int | None, *, entity: str = 'Resource') -> None:
    """Branch admins only see their own branch; anything else reads as missing."""
    if actor.is_super_admin:
        return
    if actor.role == Role.BRANCH_ADMIN.value:
        if actor.branch_id is None or int(branch_id or 0) != int(actor.branch_id):
            raise NotFoundError(f'{entity} not found')


def assert_can_manage_slot(actor: Actor, slot: Slot) -> None:
    if actor.is_super_admin:
        return
    if actor.role == Role.BRANCH_ADMIN.value:
        assert_branch_scope(actor, slot.branch_id, entity='Slot')
        return
    if actor.role == Role.TEACHER.value:
        if int(slot.teacher_id) != int(actor.user_id):
            raise AuthorizationError('Teachers can only manage their own slots')
        return
    raise AuthorizationError('Students cannot manage slots')


def assert_can_view_booking(actor: Actor, booking: Booking, slot: Slot) -> None:
    if actor.is_student:
        if int(booking.student_id) != int(actor.user_id):
            raise NotFoundError('Booking not found')
        return
    if actor.role == Role.TEACHER.value:
        if int(slot.teacher_id) != int(actor.user_id):
            raise NotFoundError('Booking not found')
        return
    assert_branch_scope(actor, slot.branch_id, entity='Booking')


def assert_can_act_for_student(actor: Actor, student_id: int, student_branch_id: int | None) -> None:
    if actor.is_student:
        if int(student_id) != int(actor.user_id):
            raise AuthorizationError('Students can only act for themselves')
        return
    if actor.role == Role.BRANCH_ADMIN.value:
        assert_branch_scope(actor, student_branch_id, entity='Student')
