import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from tutoring_booking.config import settings
from tutoring_booking.db import SessionLocal
from tutoring_booking.metrics import flush_booking_metrics, run_timed_job
from tutoring_booking.services.expiry_sweep_service import sweep_expired_grants
from tutoring_booking.services.notification_service import dispatch_pending_notifications


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task) -> None:
    run_timed_job(label, lambda: _with_db(task))


def dispatch_notifications_job():
    _run_job('dispatch_notifications', lambda db: dispatch_pending_notifications(db))


def sweep_expired_grants_job():
    _run_job('sweep_expired_grants', lambda db: sweep_expired_grants(db))


def booking_metrics_flush_job():
    run_timed_job('booking_metrics_flush', flush_booking_metrics)


def start_scheduler():
    scheduler.add_job(
        dispatch_notifications_job,
        'interval',
        seconds=max(5, settings.outbox_dispatch_interval_seconds),
        id='dispatch_notifications',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        sweep_expired_grants_job,
        'interval',
        minutes=max(1, settings.expiry_sweep_interval_minutes),
        id='sweep_expired_grants',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(booking_metrics_flush_job, 'interval', minutes=1, id='booking_metrics_flush', replace_existing=True)

    if not scheduler.running:
        scheduler.start()
        logger.info('scheduler_started jobs=%s', len(scheduler.get_jobs()))


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
