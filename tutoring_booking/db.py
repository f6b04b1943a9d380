import logging
import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from tutoring_booking.config import settings
from tutoring_booking.request_context import current_endpoint


_slow_logger = logging.getLogger('tutoring_booking.db.slow_query')
_QUERY_STARTED = '_booking_query_started'


def install_slow_query_logging(bind: Engine, threshold_ms: int) -> None:
    """Warn about statements slower than ``threshold_ms``, tagged with the endpoint that issued them."""

    @event.listens_for(bind, 'before_cursor_execute')
    def _mark_start(conn, cursor, statement, parameters, context, executemany):
        setattr(context, _QUERY_STARTED, time.perf_counter())

    @event.listens_for(bind, 'after_cursor_execute')
    def _report_slow(conn, cursor, statement, parameters, context, executemany):
        started = getattr(context, _QUERY_STARTED, None)
        if started is None:
            return
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms < threshold_ms:
            return
        _slow_logger.warning(
            'slow_query duration_ms=%.2f endpoint=%s sql=%s',
            elapsed_ms,
            current_endpoint.get(),
            ' '.join((statement or '').split()),
        )


def build_engine(database_url: str) -> Engine:
    # SQLite connections are shared between the request thread pool and the scheduler.
    connect_args = {'check_same_thread': False} if database_url.startswith('sqlite') else {}
    bind = create_engine(database_url, connect_args=connect_args)
    install_slow_query_logging(bind, settings.db_slow_query_ms)
    return bind


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
