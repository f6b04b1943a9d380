from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.core.time_provider import TimeProvider, default_time_provider
from tutoring_booking.metrics import timed_service
from tutoring_booking.models import NotificationOutbox
from tutoring_booking.services.observability_counters import record_observability_event


logger = logging.getLogger(__name__)

EVENT_BOOKING_CONFIRMED = 'booking_confirmed'
EVENT_BOOKING_CANCELLED = 'booking_cancelled'
EVENT_TEACHER_CANCELLATION = 'teacher_cancellation_batch'
EVENT_WAITLIST_OFFER = 'waitlist_offer'


class BookingNotifier:
    def send_booking_confirmation(self, booking_id: int) -> None:
        raise NotImplementedError

    def send_booking_cancellation(self, booking_id: int, reason: str) -> None:
        raise NotImplementedError

    def send_teacher_cancellation_batch(self, slot_id: int, reason: str) -> None:
        raise NotImplementedError

    def send_waitlist_offer(self, entry_id: int) -> None:
        raise NotImplementedError


class LogNotifier(BookingNotifier):
    def send_booking_confirmation(self, booking_id: int) -> None:
        logger.info('notify_booking_confirmed booking_id=%s', booking_id)

    def send_booking_cancellation(self, booking_id: int, reason: str) -> None:
        logger.info('notify_booking_cancelled booking_id=%s reason=%s', booking_id, reason)

    def send_teacher_cancellation_batch(self, slot_id: int, reason: str) -> None:
        logger.info('notify_teacher_cancellation slot_id=%s reason=%s', slot_id, reason)

    def send_waitlist_offer(self, entry_id: int) -> None:
        logger.info('notify_waitlist_offer entry_id=%s', entry_id)


class HttpNotifier(BookingNotifier):
    """Posts events to the notification service; every call is bounded by the client timeout."""

    def __init__(self, base_url: str, *, timeout_seconds: float, transport: httpx.BaseTransport | None = None) -> None:
        self._base_url = base_url.rstrip('/')
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def _post(self, event: str, payload: dict[str, Any]) -> None:
        with httpx.Client(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
            response = client.post('/events', json={'event': event, 'payload': payload})
            response.raise_for_status()

    def send_booking_confirmation(self, booking_id: int) -> None:
        self._post(EVENT_BOOKING_CONFIRMED, {'booking_id': booking_id})

    def send_booking_cancellation(self, booking_id: int, reason: str) -> None:
        self._post(EVENT_BOOKING_CANCELLED, {'booking_id': booking_id, 'reason': reason})

    def send_teacher_cancellation_batch(self, slot_id: int, reason: str) -> None:
        self._post(EVENT_TEACHER_CANCELLATION, {'slot_id': slot_id, 'reason': reason})

    def send_waitlist_offer(self, entry_id: int) -> None:
        self._post(EVENT_WAITLIST_OFFER, {'waiting_entry_id': entry_id})


def build_notifier() -> BookingNotifier:
    mode = (settings.notifier_mode or 'log').strip().lower()
    if mode == 'http':
        return HttpNotifier(settings.notifier_base_url, timeout_seconds=settings.notifier_timeout_seconds)
    return LogNotifier()


def enqueue_notification(
    db: Session,
    event_type: str,
    *,
    booking_id: int | None = None,
    slot_id: int | None = None,
    waiting_entry_id: int | None = None,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> NotificationOutbox:
    """Written in the caller's transaction, so it only exists if the state change commits."""
    row = NotificationOutbox(
        event_type=event_type,
        booking_id=booking_id,
        slot_id=slot_id,
        waiting_entry_id=waiting_entry_id,
        reason=str(reason or '')[:255],
        status='pending',
        attempts=0,
        created_at=time_provider.local_now(),
    )
    db.add(row)
    db.flush()
    return row


def _deliver(notifier: BookingNotifier, row: NotificationOutbox) -> None:
    if row.event_type == EVENT_BOOKING_CONFIRMED:
        notifier.send_booking_confirmation(int(row.booking_id))
    elif row.event_type == EVENT_BOOKING_CANCELLED:
        notifier.send_booking_cancellation(int(row.booking_id), row.reason)
    elif row.event_type == EVENT_TEACHER_CANCELLATION:
        notifier.send_teacher_cancellation_batch(int(row.slot_id), row.reason)
    elif row.event_type == EVENT_WAITLIST_OFFER:
        notifier.send_waitlist_offer(int(row.waiting_entry_id))
    else:
        raise ValueError(f'Unknown notification event {row.event_type}')


def _claimable(lease_cutoff):
    return or_(
        NotificationOutbox.status == 'pending',
        and_(NotificationOutbox.status == 'sending', NotificationOutbox.last_attempt_at < lease_cutoff),
    )


def _claim(db: Session, row_id: int, *, now, lease_cutoff) -> NotificationOutbox | None:
    """Move one row to ``sending`` with a conditional UPDATE; only the dispatcher that wins delivers it."""
    claimed = (
        db.query(NotificationOutbox)
        .filter(NotificationOutbox.id == row_id, _claimable(lease_cutoff))
        .update(
            {
                NotificationOutbox.status: 'sending',
                NotificationOutbox.attempts: NotificationOutbox.attempts + 1,
                NotificationOutbox.last_attempt_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if claimed != 1:
        return None
    return db.get(NotificationOutbox, row_id)


@timed_service('dispatch_pending_notifications')
def dispatch_pending_notifications(
    db: Session,
    notifier: BookingNotifier | None = None,
    *,
    limit: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, int]:
    """Drain pending outbox rows. Delivery failures are logged and retried later, never raised.

    Rows are claimed one at a time before delivery, so the post-request task and the
    scheduler job can drain the table together without sending anything twice. A claim
    left in ``sending`` by a dead worker becomes claimable again after the lease.
    """
    active_notifier = notifier or build_notifier()
    max_attempts = max(1, int(settings.outbox_max_attempts))
    lease = timedelta(seconds=max(1, int(settings.outbox_claim_lease_seconds)))
    started = time_provider.local_now()
    row_ids = [
        row_id
        for (row_id,) in db.query(NotificationOutbox.id)
        .filter(_claimable(started - lease))
        .order_by(NotificationOutbox.id.asc())
        .limit(max(1, int(limit or settings.outbox_batch_size)))
        .all()
    ]
    db.commit()
    summary = {'sent': 0, 'retrying': 0, 'failed': 0}
    for row_id in row_ids:
        now = time_provider.local_now()
        row = _claim(db, row_id, now=now, lease_cutoff=now - lease)
        if row is None:
            continue
        try:
            _deliver(active_notifier, row)
        except Exception as exc:
            row.last_error = f'{type(exc).__name__}: {exc}'[:2000]
            if int(row.attempts) >= max_attempts:
                row.status = 'failed'
                summary['failed'] += 1
            else:
                row.status = 'pending'
                summary['retrying'] += 1
            record_observability_event('notification_delivery_failed')
            logger.warning(
                'notification_delivery_failed',
                extra={'outbox_id': row.id, 'event_type': row.event_type, 'attempts': row.attempts},
            )
        else:
            row.status = 'sent'
            row.sent_at = now
            row.last_error = ''
            summary['sent'] += 1
        db.commit()
    return summary


def run_post_commit_dispatch(session_factory, notifier: BookingNotifier | None = None) -> None:
    """Background-task entry point used right after a request commits."""
    db = session_factory()
    try:
        dispatch_pending_notifications(db, notifier)
    except Exception:
        db.rollback()
        logger.exception('post_commit_dispatch_failed')
    finally:
        db.close()
