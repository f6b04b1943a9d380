from __future__ import annotations

import threading
from bisect import bisect_left
from datetime import datetime, timedelta

from tutoring_booking.core.time_provider import default_time_provider


RETENTION = timedelta(hours=25)


class _EventLog:
    """Timestamps of named booking events, pruned to the retention window."""

    def __init__(self) -> None:
        self.guard = threading.Lock()
        self.stamps: dict[str, list[datetime]] = {}

    def prune(self, name: str, cutoff: datetime) -> list[datetime]:
        stamps = self.stamps.get(name, [])
        keep_from = bisect_left(stamps, cutoff)
        if keep_from:
            del stamps[:keep_from]
        return stamps


_log = _EventLog()


def _normalize(name: str) -> str:
    return str(name or '').strip().lower()


def record_observability_event(name: str, *, at: datetime | None = None) -> None:
    event = _normalize(name)
    if not event:
        return
    stamp = at or default_time_provider.local_now()
    with _log.guard:
        stamps = _log.stamps.setdefault(event, [])
        if stamps and stamp < stamps[-1]:
            stamps.insert(bisect_left(stamps, stamp), stamp)
        else:
            stamps.append(stamp)
        _log.prune(event, stamp - RETENTION)


def count_observability_events(name: str, *, window_hours: int = 24, now: datetime | None = None) -> int:
    event = _normalize(name)
    if not event:
        return 0
    current = now or default_time_provider.local_now()
    hours = max(1, int(window_hours or 24))
    with _log.guard:
        stamps = _log.prune(event, current - RETENTION)
        return len(stamps) - bisect_left(stamps, current - timedelta(hours=hours))


def snapshot_observability_counts(prefix: str = '', *, window_hours: int = 24) -> dict[str, int]:
    with _log.guard:
        names = sorted(name for name in _log.stamps if name.startswith(prefix))
    return {name: count_observability_events(name, window_hours=window_hours) for name in names}


def clear_observability_events() -> None:
    with _log.guard:
        _log.stamps.clear()
