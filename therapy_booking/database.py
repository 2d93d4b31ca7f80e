from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from therapy_booking.core import config


Base = declarative_base()

_schema_lock = Lock()
_schema_checked_engines: set[int] = set()


def create_db_engine(database_url: str | None = None) -> Engine:
    url = database_url or config.DATABASE_URL

    if url.startswith('sqlite'):
        options = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in url or url in {'sqlite://', 'sqlite+pysqlite://'}:
            options['poolclass'] = StaticPool
        return create_engine(url, echo=config.DATABASE_ECHO, **options)

    return create_engine(url, echo=config.DATABASE_ECHO, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


def init_database(engine: Engine) -> None:
    # Register every mapped table before create_all.
    from therapy_booking.models import (  # noqa: F401
        availability,
        client,
        notification,
        package,
        payment,
        psychologist,
        reschedule_request,
        session,
        user,
    )

    Base.metadata.create_all(bind=engine)
    ensure_booking_schema(engine)


def ensure_booking_schema(engine: Engine) -> None:
    """Bring tables created by older releases up to the current layout.

    The partial unique index on ``sessions`` is what keeps two bookings from
    holding the same slot, so it is created here even for existing tables.
    """
    engine_key = id(engine)
    if engine_key in _schema_checked_engines:
        return

    with _schema_lock:
        if engine_key in _schema_checked_engines:
            return

        from therapy_booking.models.session import ACTIVE_SLOT_INDEX

        inspector = inspect(engine)
        table_names = inspector.get_table_names()

        with engine.begin() as connection:
            if 'availability' in table_names:
                existing_columns = {column['name'] for column in inspector.get_columns('availability')}
                if 'version' not in existing_columns:
                    connection.execute(
                        text('ALTER TABLE availability ADD COLUMN version INTEGER NOT NULL DEFAULT 0')
                    )
                connection.execute(
                    text(
                        'CREATE UNIQUE INDEX IF NOT EXISTS uq_availability_psychologist_date '
                        'ON availability(psychologist_id, date)'
                    )
                )

            if 'sessions' in table_names:
                existing_columns = {column['name'] for column in inspector.get_columns('sessions')}
                migration_steps = [
                    ('client_package_id', 'ALTER TABLE sessions ADD COLUMN client_package_id INTEGER'),
                    ('payment_id', 'ALTER TABLE sessions ADD COLUMN payment_id INTEGER'),
                    ('meeting_url', 'ALTER TABLE sessions ADD COLUMN meeting_url VARCHAR'),
                    ('calendar_event_id', 'ALTER TABLE sessions ADD COLUMN calendar_event_id VARCHAR'),
                ]
                for column_name, statement in migration_steps:
                    if column_name not in existing_columns:
                        connection.execute(text(statement))
                ACTIVE_SLOT_INDEX.create(bind=connection, checkfirst=True)
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS idx_sessions_psychologist_date '
                        'ON sessions(psychologist_id, scheduled_date)'
                    )
                )

        _schema_checked_engines.add(engine_key)
