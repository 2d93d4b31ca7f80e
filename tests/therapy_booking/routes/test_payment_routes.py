from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from therapy_booking.routes.payment_routes import (
    CreatePaymentOrderRequest,
    PaymentCallback,
    create_payment_order,
    get_payment_status,
    payment_failure,
    payment_success,
)
from therapy_booking.services.payment_service import PaymentService

DAY = date(2099, 1, 10)


@pytest.fixture
def payments(bookings, people):
    bookings.store.publish_day(people['psychologist'], DAY, ['09:00'])
    return PaymentService(bookings.db, bookings)


def order(people, transaction_id='txn-1'):
    return CreatePaymentOrderRequest(
        transaction_id=transaction_id,
        psychologist_id=people['psychologist'],
        scheduled_date=DAY,
        scheduled_time='9:00 AM',
        amount=Decimal('1500.00'),
    )


def test_order_request_rejects_non_positive_amount(people) -> None:
    with pytest.raises(ValueError):
        CreatePaymentOrderRequest(
            transaction_id='txn-0',
            psychologist_id=people['psychologist'],
            scheduled_date=DAY,
            scheduled_time='09:00',
            amount=Decimal('0'),
        )


def test_order_then_success_callback_books_session(db, people, payments) -> None:
    created = create_payment_order(order(people), current_user=people['users']['client'], db=db, payments=payments)

    confirmed = payment_success(PaymentCallback(txnid='txn-1', status='success', mihpayid='403993715'), payments=payments)
    status = get_payment_status('txn-1', current_user=people['users']['client'], db=db, payments=payments)

    assert created.status == 'pending'
    assert created.scheduled_time == '09:00'
    assert confirmed.degraded is False
    assert status.status == 'success'
    assert status.session_id == confirmed.session_id


def test_failure_callback_then_success_is_conflict(db, people, payments) -> None:
    create_payment_order(order(people), current_user=people['users']['client'], db=db, payments=payments)

    failed = payment_failure(PaymentCallback(txnid='txn-1', status='failure'), payments=payments)
    with pytest.raises(HTTPException) as exception_info:
        payment_success(PaymentCallback(txnid='txn-1'), payments=payments)

    assert failed.status == 'failed'
    assert exception_info.value.status_code == 409


def test_unknown_transaction_is_not_found(db, people, payments) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_payment_status('missing', current_user=people['users']['client'], db=db, payments=payments)

    assert exception_info.value.status_code == 404


def test_payment_status_is_hidden_from_other_clients(db, people, payments) -> None:
    create_payment_order(order(people), current_user=people['users']['client'], db=db, payments=payments)

    with pytest.raises(HTTPException) as exception_info:
        get_payment_status('txn-1', current_user=people['users']['other_client'], db=db, payments=payments)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Payment record not found.'


def test_payment_status_is_visible_to_psychologist_and_admin(db, people, payments) -> None:
    create_payment_order(order(people), current_user=people['users']['client'], db=db, payments=payments)

    for user in (people['users']['psychologist'], people['users']['admin']):
        status = get_payment_status('txn-1', current_user=user, db=db, payments=payments)
        assert status.status == 'pending'
