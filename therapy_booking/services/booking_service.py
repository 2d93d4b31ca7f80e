"""Booking, cancellation and rescheduling of therapy sessions.

Every write follows the same order: validate, check the slot, commit the
session row, then update the availability index and call external services.
Only the session commit decides success. The partial unique index on
``sessions`` turns a lost race into ``SlotUnavailable``; everything after the
commit is best-effort and logged when it fails.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.core import config
from therapy_booking.core.errors import (
    InvalidStateTransition,
    NotFound,
    PackageExhausted,
    PastDateRejected,
    SlotUnavailable,
    StorageUnavailable,
)
from therapy_booking.core.time_of_day import (
    TimeStyle,
    coerce_date,
    coerce_slot,
    format_time_of_day,
    slot_bounds,
)
from therapy_booking.models.client import Client
from therapy_booking.models.notification import (
    NOTIFICATION_RESCHEDULE_APPROVED,
    NOTIFICATION_RESCHEDULE_REJECTED,
    NOTIFICATION_RESCHEDULE_REQUESTED,
    NOTIFICATION_SESSION_CANCELLED,
    Notification,
)
from therapy_booking.models.package import ClientPackage, Package
from therapy_booking.models.payment import Payment
from therapy_booking.models.psychologist import Psychologist
from therapy_booking.models.reschedule_request import RescheduleRequest
from therapy_booking.models.session import HOLDING_STATUSES, SessionStatus, TherapySession
from therapy_booking.services.availability_store import AvailabilityStore
from therapy_booking.services.collaborators import (
    BookingDetails,
    BookingParties,
    Collaborators,
    Party,
)
from therapy_booking.services.conflict_checker import ConflictChecker
from therapy_booking.services.post_commit import PostCommitTask, TaskFailure, run_post_commit_tasks

logger = logging.getLogger(__name__)

REQUEST_PENDING = 'pending'
REQUEST_APPROVED = 'approved'
REQUEST_REJECTED = 'rejected'

TRANSITIONS = {
    (SessionStatus.BOOKED, 'cancel'): SessionStatus.CANCELED,
    (SessionStatus.BOOKED, 'reschedule'): SessionStatus.RESCHEDULED,
    (SessionStatus.BOOKED, 'request_reschedule'): SessionStatus.RESCHEDULE_REQUESTED,
    (SessionStatus.RESCHEDULE_REQUESTED, 'approve'): SessionStatus.RESCHEDULED,
    (SessionStatus.RESCHEDULE_REQUESTED, 'reject'): SessionStatus.BOOKED,
    (SessionStatus.BOOKED, 'complete'): SessionStatus.COMPLETED,
    (SessionStatus.RESCHEDULED, 'complete'): SessionStatus.COMPLETED,
}


def next_status(current: str, action: str) -> SessionStatus:
    try:
        status = SessionStatus(current)
    except ValueError as exc:
        raise InvalidStateTransition(f'Unknown session status {current!r}.') from exc

    target = TRANSITIONS.get((status, action))
    if target is None:
        raise InvalidStateTransition(
            f'Cannot {action.replace("_", " ")} a session that is {status.value.replace("_", " ")}.'
        )
    return target


@dataclass
class BookingMeta:
    price: Decimal | None = None
    package_id: int | None = None
    client_package_id: int | None = None
    payment_id: int | None = None
    notes: str | None = None


@dataclass
class BookingResult:
    """A committed session plus what went wrong after the commit, if anything.

    ``degraded`` means the availability index could not be updated; the
    session itself is valid.
    """
    booking: TherapySession
    degraded: bool = False
    failures: list[TaskFailure] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        messages = [failure.describe() for failure in self.failures]
        if self.degraded:
            messages.insert(0, 'availability: slot list may be stale')
        return messages


class BookingService:
    def __init__(
        self,
        db: Session,
        store: AvailabilityStore | None = None,
        checker: ConflictChecker | None = None,
        collaborators: Collaborators | None = None,
        today: Callable[[], date] = date.today,
        collaborator_timeout: float | None = None,
    ):
        self.db = db
        self.today = today
        self.store = store or AvailabilityStore(db, today=today)
        self.checker = checker or ConflictChecker(db, self.store)
        self.collaborators = collaborators or Collaborators()
        self.collaborator_timeout = collaborator_timeout or config.COLLABORATOR_TIMEOUT_SECONDS

    # Queries

    def get_booking(self, booking_id: int) -> TherapySession:
        booking = self._get(TherapySession, booking_id)
        if booking is None:
            raise NotFound('Session not found.')
        return booking

    def list_bookings(
        self,
        client_id: int | None = None,
        provider_id: int | None = None,
        statuses: list[str] | None = None,
    ) -> list[TherapySession]:
        try:
            query = self.db.query(TherapySession)
            if client_id is not None:
                query = query.filter(TherapySession.client_id == client_id)
            if provider_id is not None:
                query = query.filter(TherapySession.psychologist_id == provider_id)
            if statuses:
                query = query.filter(TherapySession.status.in_(statuses))
            return query.order_by(
                TherapySession.scheduled_date.asc(),
                TherapySession.scheduled_time.asc(),
            ).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Sessions could not be read.') from exc

    def list_reschedule_requests(self, provider_id: int, status: str | None = REQUEST_PENDING) -> list[RescheduleRequest]:
        try:
            query = self.db.query(RescheduleRequest).join(
                TherapySession, TherapySession.id == RescheduleRequest.session_id,
            ).filter(TherapySession.psychologist_id == provider_id)
            if status is not None:
                query = query.filter(RescheduleRequest.status == status)
            return query.order_by(RescheduleRequest.created_at.asc()).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Reschedule requests could not be read.') from exc

    # Booking

    def book(
        self,
        client_id: int,
        provider_id: int,
        day: date | str,
        slot: int | str,
        meta: BookingMeta | None = None,
    ) -> BookingResult:
        meta = meta or BookingMeta()
        day = coerce_date(day)
        slot = coerce_slot(slot)
        self._require_future(day, 'Session date must be in the future.')

        psychologist = self._get(Psychologist, provider_id)
        if psychologist is None:
            raise NotFound('Psychologist not found.')
        client = self._get(Client, client_id)
        if client is None:
            raise NotFound('Client not found.')

        package = None
        if meta.package_id is not None:
            package = self._get(Package, meta.package_id)
            if package is None or package.psychologist_id != provider_id:
                raise NotFound('Package not found or does not belong to this psychologist.')

        if not self.checker.is_available(provider_id, day, slot):
            raise SlotUnavailable('Selected time slot is not available.')

        price = meta.price
        if price is None and package is not None:
            price = package.price

        booking = TherapySession(
            client_id=client_id,
            psychologist_id=provider_id,
            scheduled_date=day,
            scheduled_time=slot,
            status=SessionStatus.BOOKED.value,
            price=price,
            package_id=meta.package_id,
            client_package_id=meta.client_package_id,
            payment_id=meta.payment_id,
            notes=meta.notes,
        )

        try:
            self.db.add(booking)
            if meta.client_package_id is not None:
                self._consume_package_session(meta.client_package_id, client_id, provider_id)
            self.db.commit()
        except PackageExhausted:
            self.db.rollback()
            raise
        except IntegrityError as exc:
            self.db.rollback()
            logger.info(
                'Lost slot claim for psychologist %s on %s at %s',
                provider_id,
                day,
                format_time_of_day(slot),
            )
            raise SlotUnavailable('This time slot is already booked.') from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Session could not be saved. Please retry.') from exc

        logger.info(
            'Booked session %s: client %s with psychologist %s on %s at %s',
            booking.id,
            client_id,
            provider_id,
            day,
            format_time_of_day(slot),
        )

        result = BookingResult(booking=booking)
        if not self._best_effort_index('remove_slot', provider_id, day, slot):
            result.degraded = True
        result.failures.extend(self._after_booking(booking, psychologist, client))
        return result

    # Cancellation

    def cancel(self, booking_id: int, actor_id: int | None = None) -> BookingResult:
        """Cancel a booked session. ``actor_id`` is the client id, or None for staff."""
        booking = self._get_owned(booking_id, actor_id)
        next_status(booking.status, 'cancel')
        self._require_future(booking.scheduled_date, 'Cannot cancel sessions on or before today.')

        provider_id = booking.psychologist_id
        day = booking.scheduled_date
        slot = booking.scheduled_time

        self._apply_transition(booking, 'cancel')
        self.db.add(
            Notification(
                psychologist_id=provider_id,
                client_id=booking.client_id,
                session_id=booking.id,
                type=NOTIFICATION_SESSION_CANCELLED,
                message=f'Session on {day.isoformat()} at {format_time_of_day(slot, TimeStyle.H12)} was cancelled.',
            )
        )
        self._commit('Session could not be cancelled. Please retry.')
        logger.info('Cancelled session %s', booking.id)

        result = BookingResult(booking=booking)
        if not self._best_effort_index('restore_slot', provider_id, day, slot):
            result.degraded = True

        notifier = self.collaborators.notifier
        if notifier is not None:
            details = self._details(booking)
            parties = self._parties_for(booking)
            result.failures.extend(
                self._run_tasks([
                    PostCommitTask('notifier.cancelled', lambda: notifier.notify_cancelled(details, parties)),
                ])
            )
        return result

    # Rescheduling

    def reschedule(
        self,
        booking_id: int,
        new_day: date | str,
        new_slot: int | str,
        actor_id: int | None = None,
    ) -> BookingResult:
        new_day = coerce_date(new_day)
        new_slot = coerce_slot(new_slot)
        booking = self._get_owned(booking_id, actor_id)
        next_status(booking.status, 'reschedule')
        self._validate_new_slot(booking, new_day, new_slot)

        if not self.checker.is_available(booking.psychologist_id, new_day, new_slot, exclude_booking_id=booking.id):
            raise SlotUnavailable('Selected time slot is not available.')

        previous = self._details(booking)
        self._apply_transition(booking, 'reschedule', scheduled_date=new_day, scheduled_time=new_slot)
        self._commit('Session could not be rescheduled. Please retry.')
        logger.info('Rescheduled session %s to %s at %s', booking.id, new_day, format_time_of_day(new_slot))

        return self._after_move(booking, previous)

    def request_reschedule(
        self,
        booking_id: int,
        client_id: int,
        new_day: date | str,
        new_slot: int | str,
    ) -> RescheduleRequest:
        """Record a proposed move without claiming the new slot.

        Availability is checked when the psychologist approves, not here.
        """
        new_day = coerce_date(new_day)
        new_slot = coerce_slot(new_slot)
        booking = self._get_owned(booking_id, client_id)
        next_status(booking.status, 'request_reschedule')
        self._validate_new_slot(booking, new_day, new_slot)

        self._apply_transition(booking, 'request_reschedule')
        request = RescheduleRequest(
            session_id=booking.id,
            requested_by=client_id,
            requested_date=new_day,
            requested_time=new_slot,
            status=REQUEST_PENDING,
        )
        self.db.add(request)
        self.db.add(
            Notification(
                psychologist_id=booking.psychologist_id,
                client_id=client_id,
                session_id=booking.id,
                type=NOTIFICATION_RESCHEDULE_REQUESTED,
                message=(
                    f'Reschedule requested from {booking.scheduled_date.isoformat()} '
                    f'{format_time_of_day(booking.scheduled_time, TimeStyle.H12)} to '
                    f'{new_day.isoformat()} {format_time_of_day(new_slot, TimeStyle.H12)}.'
                ),
            )
        )
        self._commit('Reschedule request could not be saved. Please retry.')
        logger.info('Reschedule requested for session %s (request %s)', booking.id, request.id)
        return request

    def approve_reschedule(self, request_id: int, provider_id: int) -> BookingResult:
        request, booking = self._get_pending_request(request_id, provider_id)
        next_status(booking.status, 'approve')
        self._require_future(request.requested_date, 'Requested session date must be in the future.')

        new_day = request.requested_date
        new_slot = request.requested_time
        if not self.checker.is_available(provider_id, new_day, new_slot, exclude_booking_id=booking.id):
            raise SlotUnavailable('Requested time slot is no longer available.')

        previous = self._details(booking)
        self._apply_transition(booking, 'approve', scheduled_date=new_day, scheduled_time=new_slot)
        request.status = REQUEST_APPROVED
        request.decided_at = datetime.utcnow()
        self.db.add(
            Notification(
                psychologist_id=provider_id,
                client_id=booking.client_id,
                session_id=booking.id,
                type=NOTIFICATION_RESCHEDULE_APPROVED,
                message=(
                    f'Your session was moved to {new_day.isoformat()} '
                    f'at {format_time_of_day(new_slot, TimeStyle.H12)}.'
                ),
            )
        )
        self._commit('Reschedule could not be approved. Please retry.')
        logger.info('Approved reschedule request %s for session %s', request_id, booking.id)

        return self._after_move(booking, previous)

    def reject_reschedule(self, request_id: int, provider_id: int) -> RescheduleRequest:
        request, booking = self._get_pending_request(request_id, provider_id)
        next_status(booking.status, 'reject')

        self._apply_transition(booking, 'reject')
        request.status = REQUEST_REJECTED
        request.decided_at = datetime.utcnow()
        self.db.add(
            Notification(
                psychologist_id=provider_id,
                client_id=booking.client_id,
                session_id=booking.id,
                type=NOTIFICATION_RESCHEDULE_REJECTED,
                message=(
                    f'Your reschedule request was declined. The session stays on '
                    f'{booking.scheduled_date.isoformat()} at '
                    f'{format_time_of_day(booking.scheduled_time, TimeStyle.H12)}.'
                ),
            )
        )
        self._commit('Reschedule could not be rejected. Please retry.')
        logger.info('Rejected reschedule request %s for session %s', request_id, booking.id)
        return request

    # Completion and removal

    def complete(self, booking_id: int) -> TherapySession:
        booking = self.get_booking(booking_id)
        self._apply_transition(booking, 'complete')
        self._commit('Session could not be completed. Please retry.')
        return booking

    def delete_booking(self, booking_id: int) -> None:
        booking = self.get_booking(booking_id)
        if booking.status == SessionStatus.COMPLETED.value:
            raise InvalidStateTransition('Cannot delete completed sessions.')

        held = booking.status in HOLDING_STATUSES
        provider_id = booking.psychologist_id
        day = booking.scheduled_date
        slot = booking.scheduled_time

        try:
            self.db.query(RescheduleRequest).filter(RescheduleRequest.session_id == booking.id).delete(
                synchronize_session=False,
            )
            self.db.query(Notification).filter(Notification.session_id == booking.id).delete(
                synchronize_session=False,
            )
            self.db.execute(
                update(Payment)
                .where(Payment.session_id == booking.id)
                .values(session_id=None)
                .execution_options(synchronize_session=False)
            )
            self.db.delete(booking)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Session could not be deleted. Please retry.') from exc
        self._commit('Session could not be deleted. Please retry.')
        logger.info('Deleted session %s', booking_id)

        if held and day > self.today():
            self._best_effort_index('restore_slot', provider_id, day, slot)

    # Internals

    def _get(self, model, object_id):
        try:
            return self.db.get(model, object_id)
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Database unavailable.') from exc

    def _get_owned(self, booking_id: int, client_id: int | None) -> TherapySession:
        booking = self.get_booking(booking_id)
        if client_id is not None and booking.client_id != client_id:
            raise NotFound('Session not found.')
        return booking

    def _get_pending_request(self, request_id: int, provider_id: int) -> tuple[RescheduleRequest, TherapySession]:
        request = self._get(RescheduleRequest, request_id)
        if request is None:
            raise NotFound('Reschedule request not found.')

        booking = self.get_booking(request.session_id)
        if booking.psychologist_id != provider_id:
            raise NotFound('Reschedule request not found.')
        if request.status != REQUEST_PENDING:
            raise InvalidStateTransition(f'Reschedule request was already {request.status}.')
        return request, booking

    def _require_future(self, day: date, message: str) -> None:
        if day <= self.today():
            raise PastDateRejected(message)

    def _validate_new_slot(self, booking: TherapySession, new_day: date, new_slot: int) -> None:
        self._require_future(new_day, 'New session date must be in the future.')
        if booking.scheduled_date == new_day and booking.scheduled_time == new_slot:
            raise InvalidStateTransition('Session is already scheduled at that time.')

    def _apply_transition(self, booking: TherapySession, action: str, **values) -> SessionStatus:
        """Move ``booking`` along the state machine with a conditional UPDATE.

        The WHERE clause pins the status that was read, so two requests racing
        on the same session cannot both apply their transition.
        """
        current = booking.status
        target = next_status(current, action)

        try:
            result = self.db.execute(
                update(TherapySession)
                .where(TherapySession.id == booking.id, TherapySession.status == current)
                .values(status=target.value, updated_at=datetime.utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            self.db.rollback()
            raise SlotUnavailable('This time slot is already booked.') from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Session could not be updated. Please retry.') from exc

        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidStateTransition('Session was changed by another request. Reload and try again.')
        return target

    def _commit(self, failure_message: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise SlotUnavailable('This time slot is already booked.') from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable(failure_message) from exc

    def _consume_package_session(self, client_package_id: int, client_id: int, provider_id: int) -> None:
        result = self.db.execute(
            update(ClientPackage)
            .where(
                ClientPackage.id == client_package_id,
                ClientPackage.client_id == client_id,
                ClientPackage.psychologist_id == provider_id,
                ClientPackage.status == 'active',
                ClientPackage.remaining_sessions > 0,
            )
            .values(
                remaining_sessions=ClientPackage.remaining_sessions - 1,
                status=case((ClientPackage.remaining_sessions <= 1, 'exhausted'), else_='active'),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PackageExhausted('No remaining sessions on this package.')

    def _best_effort_index(self, operation: str, provider_id: int, day: date, slot: int) -> bool:
        try:
            if operation == 'remove_slot':
                if not self.store.remove_slot(provider_id, day, slot):
                    logger.warning(
                        'Slot %s on %s was already missing from availability for psychologist %s',
                        format_time_of_day(slot),
                        day,
                        provider_id,
                    )
            else:
                self.store.restore_slot(provider_id, day, slot)
        except StorageUnavailable:
            logger.exception(
                'Availability %s failed for psychologist %s on %s at %s; slot list may be stale',
                operation,
                provider_id,
                day,
                format_time_of_day(slot),
            )
            return False
        return True

    def _after_booking(self, booking: TherapySession, psychologist: Psychologist, client: Client) -> list[TaskFailure]:
        failures: list[TaskFailure] = []
        parties = self._parties(psychologist, client)
        details = self._details(booking)

        calendar = self.collaborators.calendar
        if calendar is not None:
            start, end = slot_bounds(details.scheduled_date, details.scheduled_time)
            report = run_post_commit_tasks(
                [
                    PostCommitTask(
                        'calendar.create_meeting',
                        lambda: calendar.create_meeting(
                            summary=f'Therapy Session - {parties.client.name} with {parties.psychologist.name}',
                            description=(
                                f'Online therapy session between {parties.client.name} '
                                f'and {parties.psychologist.name}'
                            ),
                            start_iso=start.isoformat(),
                            end_iso=end.isoformat(),
                            attendees=[parties.client, parties.psychologist],
                        ),
                    ),
                ],
                self.collaborator_timeout,
            )
            failures.extend(report.failures)
            meeting = report.results.get('calendar.create_meeting')
            if meeting is not None:
                self._save_meeting(booking, meeting)
                details = self._details(booking)

        notifier = self.collaborators.notifier
        if notifier is not None:
            failures.extend(
                self._run_tasks([
                    PostCommitTask(
                        'notifier.booking_confirmed',
                        lambda: notifier.notify_booking_confirmed(details, parties),
                    ),
                ])
            )
        return failures

    def _after_move(self, booking: TherapySession, previous: BookingDetails) -> BookingResult:
        result = BookingResult(booking=booking)
        released = self._best_effort_index(
            'restore_slot', booking.psychologist_id, previous.scheduled_date, previous.scheduled_time,
        )
        claimed = self._best_effort_index(
            'remove_slot', booking.psychologist_id, booking.scheduled_date, booking.scheduled_time,
        )
        result.degraded = not (released and claimed)

        notifier = self.collaborators.notifier
        if notifier is not None:
            details = self._details(booking)
            parties = self._parties_for(booking)
            result.failures.extend(
                self._run_tasks([
                    PostCommitTask(
                        'notifier.rescheduled',
                        lambda: notifier.notify_rescheduled(details, parties, previous),
                    ),
                ])
            )
        return result

    def _run_tasks(self, tasks: list[PostCommitTask]) -> list[TaskFailure]:
        return run_post_commit_tasks(tasks, self.collaborator_timeout).failures

    def _save_meeting(self, booking: TherapySession, meeting) -> None:
        try:
            booking.meeting_url = meeting.meeting_url
            booking.calendar_event_id = meeting.external_event_id
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception('Could not store meeting details on session %s', booking.id)

    def _details(self, booking: TherapySession) -> BookingDetails:
        return BookingDetails(
            session_id=booking.id,
            scheduled_date=booking.scheduled_date,
            scheduled_time=booking.scheduled_time,
            status=booking.status,
            price=booking.price,
            meeting_url=booking.meeting_url,
        )

    def _parties_for(self, booking: TherapySession) -> BookingParties:
        try:
            return self._parties(
                self._get(Psychologist, booking.psychologist_id),
                self._get(Client, booking.client_id),
            )
        except StorageUnavailable:
            logger.exception('Could not load parties for session %s; notifying without contact details', booking.id)
            return self._parties(None, None)

    @staticmethod
    def _parties(psychologist: Psychologist | None, client: Client | None) -> BookingParties:
        return BookingParties(
            client=Party(
                name=client.display_name if client else 'Client',
                email=client.email if client else None,
            ),
            psychologist=Party(
                name=psychologist.display_name if psychologist else 'Psychologist',
                email=psychologist.email if psychologist else None,
            ),
        )
