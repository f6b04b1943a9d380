"""Serializes check-then-write sequences per slot and per student.

The in-process backend covers a single worker; multi-process deployments still
get row locks from ``SELECT ... FOR UPDATE`` on the slot and the post-insert
recount in the booking service. A distributed backend can be swapped in with
``set_lock_backend``.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from tutoring_booking.config import settings
from tutoring_booking.core.errors import ConflictError


logger = logging.getLogger(__name__)


class LockBackend:
    def acquire(self, key: str, timeout: float) -> bool:
        raise NotImplementedError

    def release(self, key: str) -> None:
        raise NotImplementedError


class _LockEntry:
    __slots__ = ('lock', 'users')

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class MemoryLockBackend(LockBackend):
    """Per-key locks, reference counted so a key is dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    def _checkout(self, key: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def acquire(self, key: str, timeout: float) -> bool:
        entry = self._checkout(key)
        if entry.lock.acquire(timeout=max(0.0, float(timeout))):
            return True
        self._checkin(key, entry)
        return False

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._entries.get(key)
        if entry is None or not entry.lock.locked():
            return
        entry.lock.release()
        self._checkin(key, entry)

    def tracked_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._entries)


_backend: LockBackend = MemoryLockBackend()


def set_lock_backend(backend: LockBackend) -> None:
    global _backend
    _backend = backend


def slot_key(slot_id: int) -> str:
    return f'slot:{int(slot_id)}'


def student_key(student_id: int) -> str:
    return f'student:{int(student_id)}'


@contextmanager
def booking_locks(*keys: str, timeout: float | None = None) -> Iterator[None]:
    """Hold every key for the duration of the block; keys are taken in sorted order."""
    wait = settings.slot_lock_timeout_seconds if timeout is None else timeout
    ordered = sorted(set(keys))
    held: list[str] = []
    try:
        for key in ordered:
            if not _backend.acquire(key, wait):
                logger.warning('booking_lock_timeout key=%s timeout=%.1f', key, wait)
                raise ConflictError('Another booking change is in progress, retry shortly', detail={'lock': key})
            held.append(key)
        yield
    finally:
        for key in reversed(held):
            _backend.release(key)
