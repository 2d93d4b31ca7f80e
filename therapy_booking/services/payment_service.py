"""Books sessions from confirmed gateway payments.

The callback path goes through ``BookingService.book`` so it gets exactly the
same conflict checks as a client booking directly. A payment is claimed
(``pending`` -> ``processing``) before booking, so duplicate gateway callbacks
for one transaction never race each other.
"""

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.core.errors import (
    BookingError,
    InvalidStateTransition,
    NotFound,
    PastDateRejected,
    SlotUnavailable,
    StorageUnavailable,
)
from therapy_booking.core.time_of_day import coerce_date, coerce_slot
from therapy_booking.models.package import ClientPackage, Package
from therapy_booking.models.payment import Payment
from therapy_booking.models.session import TherapySession
from therapy_booking.services.booking_service import BookingMeta, BookingResult, BookingService

logger = logging.getLogger(__name__)

PAYMENT_PENDING = 'pending'
PAYMENT_PROCESSING = 'processing'
PAYMENT_SUCCESS = 'success'
PAYMENT_FAILED = 'failed'
PAYMENT_SLOT_CONFLICT = 'slot_conflict'


class PaymentService:
    def __init__(self, db: Session, bookings: BookingService):
        self.db = db
        self.bookings = bookings

    def get_payment(self, transaction_id: str) -> Payment:
        try:
            payment = self.db.query(Payment).filter(Payment.transaction_id == transaction_id).first()
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Payments could not be read.') from exc
        if payment is None:
            raise NotFound('Payment record not found.')
        return payment

    def create_pending(
        self,
        transaction_id: str,
        client_id: int,
        provider_id: int,
        day: date | str,
        slot: int | str,
        amount: Decimal,
        package_id: int | None = None,
    ) -> Payment:
        day = coerce_date(day)
        slot = coerce_slot(slot)
        if day <= self.bookings.today():
            raise PastDateRejected('Session date must be in the future.')
        if not self.bookings.checker.is_available(provider_id, day, slot):
            raise SlotUnavailable('Selected time slot is not available.')

        payment = Payment(
            transaction_id=transaction_id,
            client_id=client_id,
            psychologist_id=provider_id,
            package_id=package_id,
            scheduled_date=day,
            scheduled_time=slot,
            amount=amount,
            status=PAYMENT_PENDING,
        )
        try:
            self.db.add(payment)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise InvalidStateTransition('A payment with this transaction id already exists.') from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Payment could not be created.') from exc
        return payment

    def handle_success(self, transaction_id: str, gateway_response: dict | None = None) -> BookingResult:
        payment = self.get_payment(transaction_id)

        if payment.status == PAYMENT_SUCCESS and payment.session_id is not None:
            logger.info('Payment %s already processed', transaction_id)
            return BookingResult(booking=self.bookings.get_booking(payment.session_id))

        if payment.status == PAYMENT_PROCESSING:
            # A booking committed but the final status write did not.
            booking = self._booking_for(payment)
            if booking is None:
                raise InvalidStateTransition(f'Payment {transaction_id} is {payment.status}.')
            logger.warning('Payment %s was left processing; completing it from session %s', transaction_id, booking.id)
            self._mark_success(payment, booking.id, gateway_response)
            return BookingResult(booking=booking)

        if not self._set_status(payment.id, PAYMENT_PENDING, PAYMENT_PROCESSING):
            raise InvalidStateTransition(f'Payment {transaction_id} is {payment.status}.')

        meta = BookingMeta(price=payment.amount, package_id=payment.package_id, payment_id=payment.id)
        try:
            result = self.bookings.book(
                payment.client_id,
                payment.psychologist_id,
                payment.scheduled_date,
                payment.scheduled_time,
                meta,
            )
        except SlotUnavailable:
            logger.error('Payment %s confirmed but its slot was taken; refund required', transaction_id)
            self._set_status(payment.id, PAYMENT_PROCESSING, PAYMENT_SLOT_CONFLICT, gateway_response=gateway_response)
            raise
        except StorageUnavailable:
            self._set_status(payment.id, PAYMENT_PROCESSING, PAYMENT_PENDING)
            raise
        except BookingError:
            self._set_status(payment.id, PAYMENT_PROCESSING, PAYMENT_FAILED, gateway_response=gateway_response)
            raise

        self._mark_success(payment, result.booking.id, gateway_response)
        return result

    def handle_failure(self, transaction_id: str, gateway_response: dict | None = None) -> Payment:
        payment = self.get_payment(transaction_id)
        if self._set_status(payment.id, PAYMENT_PENDING, PAYMENT_FAILED, gateway_response=gateway_response):
            logger.info('Payment %s marked failed', transaction_id)
        return self.get_payment(transaction_id)

    def _booking_for(self, payment: Payment) -> TherapySession | None:
        try:
            return self.db.query(TherapySession).filter(TherapySession.payment_id == payment.id).first()
        except SQLAlchemyError as exc:
            raise StorageUnavailable('Sessions could not be read.') from exc

    def _mark_success(self, payment: Payment, session_id: int, gateway_response: dict | None) -> None:
        completed = self._set_status(
            payment.id,
            PAYMENT_PROCESSING,
            PAYMENT_SUCCESS,
            gateway_response=gateway_response,
            session_id=session_id,
            completed_at=datetime.utcnow(),
        )
        if completed and payment.package_id is not None:
            self._grant_package(payment, session_id)

    def _set_status(self, payment_id: int, expected: str, new_status: str, **values) -> bool:
        try:
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == expected)
                .values(status=new_status, **values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageUnavailable('Payment could not be updated.') from exc
        return result.rowcount == 1

    def _grant_package(self, payment: Payment, first_session_id: int) -> None:
        # The first session of the package was just booked by this payment.
        try:
            package = self.db.get(Package, payment.package_id)
            if package is None:
                logger.warning('Package %s for payment %s no longer exists', payment.package_id, payment.id)
                return

            remaining = max(package.session_count - 1, 0)
            self.db.add(
                ClientPackage(
                    client_id=payment.client_id,
                    psychologist_id=payment.psychologist_id,
                    package_id=package.id,
                    total_sessions=package.session_count,
                    remaining_sessions=remaining,
                    status='active' if remaining else 'exhausted',
                    first_session_id=first_session_id,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception('Client package creation failed for payment %s', payment.id)
