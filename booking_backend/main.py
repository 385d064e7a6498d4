import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking_backend.core import config
from booking_backend.core.errors import BookingError
from booking_backend.database import Base, SessionLocal, engine, ensure_appointment_schema, ensure_reminder_schema
from booking_backend.models import appointment, business, reminder, service, shift, staff, user  # noqa: F401
from booking_backend.routes import appointment_routes, availability_routes
from booking_backend.services.notifications import get_dispatcher
from booking_backend.services.reminders import ReminderScheduler

logging.basicConfig(level=config.LOG_LEVEL)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=['http://localhost:4200'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)

reminder_scheduler: ReminderScheduler | None = None


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error('%s on %s %s: %s', type(exc).__name__, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={'detail': exc.detail})


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_appointment_schema()
        ensure_reminder_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('startup')
def start_reminder_scheduler() -> None:
    global reminder_scheduler

    reminder_scheduler = ReminderScheduler(SessionLocal, get_dispatcher())
    reminder_scheduler.start()


@app.on_event('shutdown')
def stop_reminder_scheduler() -> None:
    if reminder_scheduler is not None:
        reminder_scheduler.stop()


@app.get('/')
def root():
    return {'status': 'Booking API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
