import asyncio
import os
from datetime import date

import pytest

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret')

from therapy_booking.database import build_session_factory, create_db_engine, init_database  # noqa: E402
from therapy_booking.models.client import Client  # noqa: E402
from therapy_booking.models.psychologist import Psychologist  # noqa: E402
from therapy_booking.models.user import ROLE_ADMIN, ROLE_CLIENT, ROLE_PSYCHOLOGIST, User  # noqa: E402
from therapy_booking.services.availability_store import AvailabilityStore  # noqa: E402
from therapy_booking.services.booking_service import BookingService  # noqa: E402
from therapy_booking.services.collaborators import Collaborators  # noqa: E402

# Every test runs as if today were this date, so 2099 dates are in the future.
TODAY = date(2098, 12, 1)


def fixed_today() -> date:
    return TODAY


class FakeCalendar:
    def __init__(self, meeting=None, error: Exception | None = None, delay: float = 0):
        self.meeting = meeting
        self.error = error
        self.delay = delay
        self.calls = []

    async def create_meeting(self, summary, description, start_iso, end_iso, attendees):
        self.calls.append({'summary': summary, 'start_iso': start_iso, 'end_iso': end_iso, 'attendees': attendees})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.meeting


class FakeNotifier:
    def __init__(self, error: Exception | None = None, delay: float = 0):
        self.error = error
        self.delay = delay
        self.sent = []

    async def _record(self, kind, booking, parties, previous=None):
        self.sent.append((kind, booking, parties, previous))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def notify_booking_confirmed(self, booking, parties):
        await self._record('confirmed', booking, parties)

    async def notify_rescheduled(self, booking, parties, previous):
        await self._record('rescheduled', booking, parties, previous)

    async def notify_cancelled(self, booking, parties):
        await self._record('cancelled', booking, parties)


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def engine():
    engine = create_db_engine('sqlite:///:memory:')
    init_database(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def people(db):
    users = {
        'psychologist': User(email='therapist@example.com', role=ROLE_PSYCHOLOGIST),
        'client': User(email='parent@example.com', role=ROLE_CLIENT),
        'other_client': User(email='other@example.com', role=ROLE_CLIENT),
        'admin': User(email='admin@example.com', role=ROLE_ADMIN),
    }
    db.add_all(users.values())
    db.flush()

    psychologist = Psychologist(
        user_id=users['psychologist'].id,
        first_name='Asha',
        last_name='Rao',
        email='therapist@example.com',
    )
    client = Client(
        user_id=users['client'].id,
        first_name='Priya',
        last_name='Shah',
        child_name='Aarav',
        email='parent@example.com',
    )
    other_client = Client(
        user_id=users['other_client'].id,
        first_name='Meera',
        last_name='Iyer',
        email='other@example.com',
    )
    db.add_all([psychologist, client, other_client])
    db.commit()

    return {
        'users': users,
        'psychologist': psychologist.id,
        'client': client.id,
        'other_client': other_client.id,
    }


@pytest.fixture
def store(db):
    return AvailabilityStore(db, today=fixed_today)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_service(db):
    def factory(session=None, calendar=None, notifier=None, timeout: float = 0.5) -> BookingService:
        return BookingService(
            session if session is not None else db,
            collaborators=Collaborators(calendar=calendar, notifier=notifier),
            today=fixed_today,
            collaborator_timeout=timeout,
        )

    return factory


@pytest.fixture
def bookings(make_service, notifier):
    return make_service(notifier=notifier)


@pytest.fixture
def fake_calendar():
    return FakeCalendar


@pytest.fixture
def fake_notifier():
    return FakeNotifier
