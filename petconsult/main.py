import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from petconsult.core import config
from petconsult.core.logging import setup_logging
from petconsult.database import Base, engine, ensure_message_schema, ensure_reservation_schema
from petconsult.models import appointment, availability, consultation, professional, reservation, user  # noqa: F401
from petconsult.routes import appointment_routes, auth_routes, availability_routes, payment_routes
from petconsult.services.reaper import run_hold_reaper

setup_logging()

app = FastAPI(title='Pet Consultation API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)

_reaper_task: asyncio.Task | None = None


@app.on_event('startup')
async def startup() -> None:
    global _reaper_task

    config.validate_runtime_config()

    try:
        Base.metadata.create_all(bind=engine)
        ensure_reservation_schema()
        ensure_message_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')

    if config.HOLD_REAPER_ENABLED:
        _reaper_task = asyncio.create_task(run_hold_reaper())


@app.on_event('shutdown')
async def shutdown() -> None:
    global _reaper_task

    if _reaper_task is None:
        return
    _reaper_task.cancel()
    try:
        await _reaper_task
    except asyncio.CancelledError:
        pass
    _reaper_task = None


@app.get('/')
def root():
    return {'status': 'Pet Consultation API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(availability_routes.router, prefix='/professionals')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(payment_routes.router, prefix='/payments')
