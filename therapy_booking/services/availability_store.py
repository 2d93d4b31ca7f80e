"""Per-(psychologist, date) open slot lists.

The slot list is an index over open times, not the authority on who holds a
slot; the ``sessions`` table is. Writes never read a whole record and write it
back blindly: every slot mutation is an ``UPDATE ... WHERE version = :seen``
that is retried when another request got there first.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.core import config
from therapy_booking.core.errors import NotFound, PastDateRejected, StorageUnavailable
from therapy_booking.core.time_of_day import coerce_date, coerce_slot, coerce_slots
from therapy_booking.models.availability import Availability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaySlots:
    slots: frozenset[int]
    is_published: bool


class AvailabilityStore:
    def __init__(
        self,
        db: Session,
        today: Callable[[], date] = date.today,
        max_retries: int | None = None,
    ):
        self.db = db
        self.today = today
        self.max_retries = max_retries or config.AVAILABILITY_MAX_RETRIES

    def get_day(self, provider_id: int, day: date | str) -> DaySlots:
        row = self._read(provider_id, coerce_date(day))
        if row is None:
            return DaySlots(slots=frozenset(), is_published=False)
        return DaySlots(slots=frozenset(row.time_slots or ()), is_published=bool(row.is_available))

    def publish_day(self, provider_id: int, day: date | str, slots: Iterable[int | str]) -> DaySlots:
        """Replace the open slots for ``day``; creates the record if needed."""
        day = coerce_date(day)
        if day <= self.today():
            raise PastDateRejected('Availability date must be in the future.')

        time_slots = sorted(coerce_slots(slots))
        now = datetime.utcnow()
        statement = self._insert_statement().values(
            psychologist_id=provider_id,
            date=day,
            time_slots=time_slots,
            is_available=bool(time_slots),
            version=0,
            created_at=now,
            updated_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=['psychologist_id', 'date'],
            set_={
                'time_slots': time_slots,
                'is_available': bool(time_slots),
                'version': Availability.version + 1,
                'updated_at': now,
            },
        )

        try:
            self.db.execute(statement)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Availability could not be saved.') from exc

        logger.info('Published %d slots for psychologist %s on %s', len(time_slots), provider_id, day)
        return DaySlots(slots=frozenset(time_slots), is_published=bool(time_slots))

    def remove_slot(self, provider_id: int, day: date | str, slot: int | str) -> bool:
        day = coerce_date(day)
        slot = coerce_slot(slot)

        for _ in range(self.max_retries):
            row = self._read(provider_id, day)
            if row is None or slot not in (row.time_slots or ()):
                return False

            remaining = sorted(value for value in row.time_slots if value != slot)
            if self._compare_and_set(row, remaining):
                return True
            logger.debug('Availability %s changed concurrently; retrying slot removal', row.id)

        raise StorageUnavailable('Availability kept changing while removing a slot.')

    def restore_slot(self, provider_id: int, day: date | str, slot: int | str) -> None:
        day = coerce_date(day)
        slot = coerce_slot(slot)

        for _ in range(self.max_retries):
            row = self._read(provider_id, day)

            if row is None:
                if self._create_with_slot(provider_id, day, slot):
                    return
                continue

            current = set(row.time_slots or ())
            if slot in current and row.is_available:
                return

            if self._compare_and_set(row, sorted(current | {slot})):
                return
            logger.debug('Availability %s changed concurrently; retrying slot restore', row.id)

        raise StorageUnavailable('Availability kept changing while restoring a slot.')

    def list_days(
        self,
        provider_id: int,
        start: date | None = None,
        end: date | None = None,
        published_only: bool = True,
    ) -> list[Availability]:
        try:
            query = self.db.query(Availability).filter(Availability.psychologist_id == provider_id)
            if published_only:
                query = query.filter(Availability.is_available.is_(True))
            if start is not None:
                query = query.filter(Availability.date >= start)
            if end is not None:
                query = query.filter(Availability.date <= end)
            return query.order_by(Availability.date.asc()).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Availability could not be read.') from exc

    def delete_day(self, provider_id: int, day: date | str) -> None:
        day = coerce_date(day)
        try:
            record = self.db.query(Availability).filter(
                Availability.psychologist_id == provider_id,
                Availability.date == day,
            ).first()
            if record is None:
                raise NotFound('Availability not found.')
            self.db.delete(record)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Availability could not be deleted.') from exc

    def _read(self, provider_id: int, day: date):
        try:
            return self.db.execute(
                select(
                    Availability.id,
                    Availability.time_slots,
                    Availability.is_available,
                    Availability.version,
                ).where(
                    Availability.psychologist_id == provider_id,
                    Availability.date == day,
                )
            ).first()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Availability could not be read.') from exc

    def _compare_and_set(self, row, time_slots: list[int]) -> bool:
        try:
            result = self.db.execute(
                update(Availability)
                .where(Availability.id == row.id, Availability.version == row.version)
                .values(
                    time_slots=time_slots,
                    is_available=bool(time_slots),
                    version=row.version + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Availability could not be updated.') from exc

        return result.rowcount == 1

    def _create_with_slot(self, provider_id: int, day: date, slot: int) -> bool:
        try:
            self.db.add(
                Availability(
                    psychologist_id=provider_id,
                    date=day,
                    time_slots=[slot],
                    is_available=True,
                    version=0,
                )
            )
            self.db.commit()
        except IntegrityError:
            # Another request created the record first.
            self.db.rollback()
            return False
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Availability could not be created.') from exc
        return True

    def _insert_statement(self):
        dialect_name = self.db.get_bind().dialect.name
        if dialect_name == 'postgresql':
            return postgresql.insert(Availability)
        if dialect_name == 'sqlite':
            return sqlite.insert(Availability)
        raise StorageUnavailable(f'Unsupported database dialect for availability upserts: {dialect_name}.')
