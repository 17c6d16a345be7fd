import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking_backend.core import config
from booking_backend.database import Base, engine, ensure_booking_schema
from booking_backend.models import appointment, notification, rate_limit, schedule, user  # noqa: F401
from booking_backend.routes import appointment_routes, schedule_routes
from booking_backend.services.notifications import shutdown_notification_dispatcher

logging.basicConfig(level=config.LOG_LEVEL.upper())

app = FastAPI(title='Doctor Booking API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('shutdown')
def stop_notification_workers() -> None:
    shutdown_notification_dispatcher()


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            'detail': {
                'kind': 'validation_error',
                'message': 'Request validation failed.',
                'errors': jsonable_encoder(exc.errors()),
            }
        },
    )


@app.get('/')
def root():
    return {'status': 'Doctor Booking API Running'}


app.include_router(schedule_routes.router, prefix='/doctors')
app.include_router(appointment_routes.router, prefix='/appointments')
