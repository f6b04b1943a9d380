from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.errors import RateLimitError
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.models import RateLimitState
from tutoring_booking.services.observability_counters import record_observability_event


logger = logging.getLogger(__name__)


class RateLimitStore:
    def hit(self, scope_key: str, action_name: str, *, now: datetime, window_seconds: int) -> tuple[int, datetime]:
        """Count this request; returns the count in the current window and the window start."""
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[tuple[str, str], tuple[datetime, int]] = {}

    def hit(self, scope_key: str, action_name: str, *, now: datetime, window_seconds: int) -> tuple[int, datetime]:
        key = (scope_key, action_name)
        with self._lock:
            window_start, count = self._windows.get(key, (now, 0))
            if (now - window_start).total_seconds() >= window_seconds:
                window_start, count = now, 0
            count += 1
            self._windows[key] = (window_start, count)
            return count, window_start

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


class DatabaseRateLimitStore(RateLimitStore):
    """Window state in rate_limit_states so several workers share one budget."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def hit(self, scope_key: str, action_name: str, *, now: datetime, window_seconds: int) -> tuple[int, datetime]:
        db = self._session_factory()
        try:
            row = (
                db.query(RateLimitState)
                .filter(RateLimitState.scope_key == scope_key, RateLimitState.action_name == action_name)
                .with_for_update()
                .first()
            )
            if row is None:
                row = RateLimitState(scope_key=scope_key, action_name=action_name, window_start=now, request_count=0)
                db.add(row)
            elif (now - row.window_start).total_seconds() >= window_seconds:
                row.window_start = now
                row.request_count = 0
            row.request_count = int(row.request_count or 0) + 1
            count, window_start = int(row.request_count), row.window_start
            db.commit()
            return count, window_start
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class RateLimiter:
    """Fixed-window limiter built once at startup and shared through ``app.state``."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        max_requests: int,
        window_seconds: int,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.store = store
        self.max_requests = max(1, int(max_requests or 1))
        self.window_seconds = max(1, int(window_seconds or 60))
        self.time_provider = time_provider

    def check(self, scope_key: str, action_name: str) -> bool:
        normalized_scope = str(scope_key or '').strip() or 'unknown'
        normalized_action = str(action_name or '').strip() or 'unknown_action'
        now = self.time_provider.local_now()
        count, window_start = self.store.hit(
            normalized_scope,
            normalized_action,
            now=now,
            window_seconds=self.window_seconds,
        )
        if count <= self.max_requests:
            return True

        record_observability_event('rate_limit_block')
        logger.warning(
            'rate_limit_blocked',
            extra={
                'scope_key': normalized_scope,
                'action_name': normalized_action,
                'max_requests': self.max_requests,
                'window_seconds': self.window_seconds,
            },
        )
        retry_after = max(1, int((window_start + timedelta(seconds=self.window_seconds) - now).total_seconds()))
        raise RateLimitError(f'Rate limit exceeded. Retry in {retry_after} seconds.', retry_after=retry_after)


def build_rate_limiter(session_factory: Callable[[], Session] | None = None) -> RateLimiter:
    mode = (settings.rate_limit_store or 'memory').strip().lower()
    if mode == 'database':
        if session_factory is None:
            raise ValueError('database rate limit store needs a session factory')
        store: RateLimitStore = DatabaseRateLimitStore(session_factory)
    else:
        store = MemoryRateLimitStore()
    return RateLimiter(
        store,
        max_requests=settings.rate_limit_booking_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
