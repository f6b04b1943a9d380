from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Callable

from tutoring_booking.config import settings


logger = logging.getLogger('tutoring_booking.metrics')

BookingMetricsSink = Callable[[datetime, dict[str, int]], None]


def log_booking_metrics(bucket_start: datetime, tally: dict[str, int]) -> None:
    logger.info(
        'booking_metrics minute=%s %s',
        bucket_start.isoformat(),
        ' '.join(f'{name}={tally[name]}' for name in sorted(tally)),
    )


_sink: BookingMetricsSink = log_booking_metrics


def set_booking_metrics_sink(sink: BookingMetricsSink) -> None:
    global _sink
    _sink = sink


class BookingEventTally:
    """Counts lifecycle events per wall-clock minute and hands each closed minute to the sink."""

    def __init__(self, bucket_seconds: int = 60) -> None:
        self.bucket_seconds = bucket_seconds
        self._guard = threading.Lock()
        self._bucket: int | None = None
        self._tally: Counter[str] = Counter()

    def _emit(self) -> None:
        if self._bucket is None or not self._tally:
            return
        bucket_start = datetime.fromtimestamp(self._bucket, tz=timezone.utc)
        snapshot = dict(self._tally)
        self._tally.clear()
        try:
            _sink(bucket_start, snapshot)
        except Exception:
            logger.exception('booking_metrics_sink_failed minute=%s', bucket_start.isoformat())

    def add(self, name: str) -> None:
        bucket = int(time.time()) // self.bucket_seconds * self.bucket_seconds
        with self._guard:
            if self._bucket is not None and bucket != self._bucket:
                self._emit()
            self._bucket = bucket
            self._tally[name] += 1

    def drain(self) -> None:
        with self._guard:
            self._emit()


_tally = BookingEventTally()


def record_booking_event(event: str) -> None:
    _tally.add(event)


def flush_booking_metrics() -> None:
    _tally.drain()


def _log_if_slow(label: str, started: float, threshold_ms: int) -> None:
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    if elapsed_ms >= threshold_ms:
        logger.info('service_timer label=%s duration_ms=%.2f', label, elapsed_ms)


def timed_service(label: str, *, threshold_ms: int | None = None):
    """Log calls to the wrapped service that take at least ``threshold_ms``."""

    def decorator(func):
        limit = settings.metrics_slow_ms if threshold_ms is None else threshold_ms

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                started = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _log_if_slow(label, started, limit)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _log_if_slow(label, started, limit)

        return wrapper

    return decorator


def run_timed_job(label: str, fn: Callable[[], object]) -> object:
    started = time.perf_counter()
    logger.info('job_start name=%s', label)
    outcome = 'ok'
    try:
        return fn()
    except Exception:
        outcome = 'failed'
        logger.exception('job_failed name=%s', label)
        raise
    finally:
        logger.info(
            'job_end name=%s status=%s duration_ms=%.2f',
            label,
            outcome,
            (time.perf_counter() - started) * 1000.0,
        )
