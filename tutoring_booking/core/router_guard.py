from __future__ import annotations

from fastapi import BackgroundTasks, HTTPException, Request

from tutoring_booking.models import Role
from tutoring_booking.services.access_scope_service import Actor
from tutoring_booking.services.notification_service import run_post_commit_dispatch


_ROLES = {role.value for role in Role}


def _int_header(request: Request, name: str) -> int | None:
    raw = (request.headers.get(name) or '').strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail='Unauthorized')


def require_actor(request: Request) -> Actor:
    """Identity comes from the upstream gateway, which has already authenticated the caller."""
    user_id = _int_header(request, 'X-User-Id')
    role = (request.headers.get('X-User-Role') or '').strip().upper()
    if user_id is None or user_id <= 0 or role not in _ROLES:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return Actor(user_id=user_id, role=role, branch_id=_int_header(request, 'X-Branch-Id'))


def enforce_rate_limit(request: Request, actor: Actor, action_name: str) -> None:
    limiter = getattr(request.app.state, 'rate_limiter', None)
    if limiter is None:
        return
    limiter.check(f'user:{actor.user_id}', action_name)


def schedule_dispatch(request: Request, background_tasks: BackgroundTasks) -> None:
    """Drain the outbox once the response is sent; the scheduler retries whatever is left."""
    session_factory = getattr(request.app.state, 'session_factory', None)
    if session_factory is None:
        return
    background_tasks.add_task(run_post_commit_dispatch, session_factory)
