from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tutoring_booking.config import settings
from tutoring_booking.core.errors import BookingEngineError, RateLimitError
from tutoring_booking.db import Base, SessionLocal, engine
from tutoring_booking.metrics import flush_booking_metrics
from tutoring_booking.request_context import current_endpoint, current_request_id
from tutoring_booking.routers import admin_overrides, bookings, priority, slots, system, waitlist
from tutoring_booking.scheduler import start_scheduler, stop_scheduler
from tutoring_booking.services.rate_limit_service import build_rate_limiter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    if settings.enable_scheduler:
        start_scheduler()
    yield
    stop_scheduler()
    flush_booking_metrics()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.state.session_factory = SessionLocal
app.state.rate_limiter = build_rate_limiter(SessionLocal)


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(_: Request, exc: BookingEngineError):
    headers = {'Retry-After': str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception('unhandled_error path=%s method=%s', request.url.path, request.method)
    return JSONResponse(
        status_code=500,
        content={'error': 'InternalError', 'code': 'INTERNAL_ERROR', 'message': 'Internal server error', 'detail': {}},
    )


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get('X-Request-Id') or uuid.uuid4().hex
    endpoint_token = current_endpoint.set(f'{request.method} {request.url.path}')
    request_token = current_request_id.set(request_id)
    try:
        response = await call_next(request)
    finally:
        current_endpoint.reset(endpoint_token)
        current_request_id.reset(request_token)
    response.headers['X-Request-Id'] = request_id
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('tutoring_booking.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f request_id=%s',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
            request_id,
        )
    return response


app.include_router(bookings.router)
app.include_router(slots.router)
app.include_router(priority.router)
app.include_router(admin_overrides.router)
app.include_router(system.router)
app.include_router(waitlist.router)


@app.get('/')
def health():
    return {'app': settings.app_name, 'status': 'ok'}


@app.get('/health')
def healthcheck():
    return {'status': 'ok'}
