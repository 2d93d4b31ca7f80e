from datetime import date

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.core.errors import StorageUnavailable
from therapy_booking.core.time_of_day import coerce_date, coerce_slot
from therapy_booking.models.session import HOLDING_STATUSES, TherapySession
from therapy_booking.services.availability_store import AvailabilityStore


class ConflictChecker:
    """Answers "is this slot bookable right now" from both sources of truth.

    The slot must be published in the availability store and must not be
    held by any session. The session table wins when the two disagree.
    """

    def __init__(self, db: Session, store: AvailabilityStore):
        self.db = db
        self.store = store

    def is_available(
        self,
        provider_id: int,
        day: date | str,
        slot: int | str,
        exclude_booking_id: int | None = None,
    ) -> bool:
        day = coerce_date(day)
        slot = coerce_slot(slot)

        if slot not in self.store.get_day(provider_id, day).slots:
            return False

        query = self._holding_query(provider_id, day, exclude_booking_id).filter(
            TherapySession.scheduled_time == slot,
        )
        try:
            return not self.db.query(query.exists()).scalar()
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Sessions could not be read.') from exc

    def held_slots(
        self,
        provider_id: int,
        day: date | str,
        exclude_booking_id: int | None = None,
    ) -> set[int]:
        query = self._holding_query(provider_id, coerce_date(day), exclude_booking_id)
        try:
            return {scheduled_time for (scheduled_time,) in query.all()}
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Sessions could not be read.') from exc

    def held_slots_by_date(self, provider_id: int, start: date | None, end: date | None) -> dict[date, set[int]]:
        query = self.db.query(TherapySession.scheduled_date, TherapySession.scheduled_time).filter(
            TherapySession.psychologist_id == provider_id,
            TherapySession.status.in_(HOLDING_STATUSES),
        )
        if start is not None:
            query = query.filter(TherapySession.scheduled_date >= start)
        if end is not None:
            query = query.filter(TherapySession.scheduled_date <= end)

        held: dict[date, set[int]] = {}
        try:
            for scheduled_date, scheduled_time in query.all():
                held.setdefault(scheduled_date, set()).add(scheduled_time)
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Sessions could not be read.') from exc
        return held

    def open_slots(self, provider_id: int, day: date | str) -> list[int]:
        day = coerce_date(day)
        published = self.store.get_day(provider_id, day).slots
        return sorted(published - self.held_slots(provider_id, day))

    def _holding_query(self, provider_id: int, day: date, exclude_booking_id: int | None):
        query = self.db.query(TherapySession.scheduled_time).filter(
            TherapySession.psychologist_id == provider_id,
            TherapySession.scheduled_date == day,
            TherapySession.status.in_(HOLDING_STATUSES),
        )
        if exclude_booking_id is not None:
            query = query.filter(TherapySession.id != exclude_booking_id)
        return query
