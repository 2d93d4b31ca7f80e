import logging
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.orm import Session

from therapy_booking.auth.dependencies import get_current_user
from therapy_booking.core.errors import BookingError, InvalidTimeFormat
from therapy_booking.core.time_of_day import coerce_slot, format_time_of_day
from therapy_booking.models.payment import Payment
from therapy_booking.models.user import ROLE_CLIENT, ROLE_PSYCHOLOGIST, User
from therapy_booking.routes.dependencies import (
    current_client,
    current_psychologist,
    get_db,
    get_payment_service,
    http_error,
    is_admin,
)
from therapy_booking.services.payment_service import PaymentService

router = APIRouter(tags=['payments'])

logger = logging.getLogger(__name__)


class CreatePaymentOrderRequest(BaseModel):
    transaction_id: str
    psychologist_id: int
    scheduled_date: date
    scheduled_time: int
    amount: Decimal
    package_id: int | None = None

    @field_validator('scheduled_time', mode='before')
    @classmethod
    def validate_scheduled_time(cls, value):
        try:
            return coerce_slot(value)
        except InvalidTimeFormat as exc:
            raise ValueError(exc.detail) from exc

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError('Amount must be positive.')
        return value


class PaymentCallback(BaseModel):
    model_config = ConfigDict(extra='allow')

    txnid: str
    status: str | None = None


class PaymentResponse(BaseModel):
    transaction_id: str
    status: str
    amount: Decimal
    scheduled_date: date
    scheduled_time: str
    session_id: int | None = None


class PaymentSuccessResponse(BaseModel):
    transaction_id: str
    session_id: int
    degraded: bool
    warnings: list[str]


def payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        transaction_id=payment.transaction_id,
        status=payment.status,
        amount=payment.amount,
        scheduled_date=payment.scheduled_date,
        scheduled_time=format_time_of_day(payment.scheduled_time),
        session_id=payment.session_id,
    )


@router.post('/orders', response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
def create_payment_order(
    data: CreatePaymentOrderRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    client = current_client(current_user, db)

    try:
        payment = payments.create_pending(
            transaction_id=data.transaction_id,
            client_id=client.id,
            provider_id=data.psychologist_id,
            day=data.scheduled_date,
            slot=data.scheduled_time,
            amount=data.amount,
            package_id=data.package_id,
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    return payment_response(payment)


@router.post('/success', response_model=PaymentSuccessResponse)
def payment_success(data: PaymentCallback, payments: PaymentService = Depends(get_payment_service)):
    logger.info('Payment success callback for %s', data.txnid)

    try:
        result = payments.handle_success(data.txnid, data.model_dump())
    except BookingError as exc:
        raise http_error(exc) from exc

    return PaymentSuccessResponse(
        transaction_id=data.txnid,
        session_id=result.booking.id,
        degraded=result.degraded,
        warnings=result.warnings,
    )


@router.post('/failure', response_model=PaymentResponse)
def payment_failure(data: PaymentCallback, payments: PaymentService = Depends(get_payment_service)):
    logger.info('Payment failure callback for %s', data.txnid)

    try:
        payment = payments.handle_failure(data.txnid, data.model_dump())
    except BookingError as exc:
        raise http_error(exc) from exc

    return payment_response(payment)


@router.get('/{transaction_id}', response_model=PaymentResponse)
def get_payment_status(
    transaction_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    try:
        payment = payments.get_payment(transaction_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    if not can_view_payment(current_user, db, payment):
        # Other users' payments read as missing.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Payment record not found.')

    return payment_response(payment)


def can_view_payment(user: User, db: Session, payment: Payment) -> bool:
    if is_admin(user):
        return True
    if user.role == ROLE_CLIENT:
        return payment.client_id == current_client(user, db).id
    if user.role == ROLE_PSYCHOLOGIST:
        return payment.psychologist_id == current_psychologist(user, db).id
    return False
