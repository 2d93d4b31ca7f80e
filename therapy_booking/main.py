import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from therapy_booking.core import config
from therapy_booking.database import build_session_factory, create_db_engine, init_database
from therapy_booking.routes import (
    auth_routes,
    availability_routes,
    notification_routes,
    payment_routes,
    session_routes,
)
from therapy_booking.services.collaborators import build_collaborators

logging.basicConfig(level=config.LOG_LEVEL)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()

    engine = create_db_engine()
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.collaborators = build_collaborators()

    try:
        init_database(engine)
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.get('/')
def root():
    return {'status': 'Therapy Booking API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(availability_routes.router, prefix='/availability')
app.include_router(session_routes.router, prefix='/sessions')
app.include_router(payment_routes.router, prefix='/payments')
app.include_router(notification_routes.router, prefix='/notifications')
