from datetime import date

import pytest

from therapy_booking.core.errors import InvalidStateTransition, NotFound, PastDateRejected, SlotUnavailable
from therapy_booking.models.notification import (
    NOTIFICATION_RESCHEDULE_APPROVED,
    NOTIFICATION_RESCHEDULE_REJECTED,
    NOTIFICATION_RESCHEDULE_REQUESTED,
    Notification,
)
from therapy_booking.models.psychologist import Psychologist
from therapy_booking.models.reschedule_request import RescheduleRequest
from therapy_booking.models.session import TherapySession

DAY = date(2099, 1, 10)
NEXT_DAY = date(2099, 1, 11)


@pytest.fixture
def booked(bookings, people):
    bookings.store.publish_day(people['psychologist'], DAY, ['09:00', '10:00', '11:00'])
    bookings.store.publish_day(people['psychologist'], NEXT_DAY, ['09:00'])
    result = bookings.book(people['client'], people['psychologist'], DAY, '09:00')
    return {**people, 'session': result.booking.id}


def notification_types(db, session_id: int) -> list[str]:
    return [
        notification.type
        for notification in db.query(Notification).filter(Notification.session_id == session_id).order_by(Notification.id)
    ]


def test_reschedule_moves_claim_and_slot_list(bookings, booked, notifier) -> None:
    result = bookings.reschedule(booked['session'], NEXT_DAY, '9:00 AM')

    assert result.booking.status == 'rescheduled'
    assert result.booking.scheduled_date == NEXT_DAY
    assert result.degraded is False
    assert bookings.store.get_day(booked['psychologist'], DAY).slots == frozenset({540, 600, 660})
    assert bookings.store.get_day(booked['psychologist'], NEXT_DAY).slots == frozenset()

    kind, details, _, previous = notifier.sent[-1]
    assert kind == 'rescheduled'
    assert previous.scheduled_date == DAY
    assert previous.scheduled_time == 540
    assert details.scheduled_date == NEXT_DAY


def test_reschedule_frees_the_old_slot_for_others(bookings, booked) -> None:
    bookings.reschedule(booked['session'], DAY, '10:00')

    rebooked = bookings.book(booked['other_client'], booked['psychologist'], DAY, '09:00')

    assert rebooked.booking.status == 'booked'


def test_reschedule_into_held_slot_fails(bookings, booked) -> None:
    bookings.book(booked['other_client'], booked['psychologist'], DAY, '10:00')

    with pytest.raises(SlotUnavailable):
        bookings.reschedule(booked['session'], DAY, '10:00')


def test_reschedule_race_loser_hits_unique_index(bookings, booked, db, monkeypatch) -> None:
    other = bookings.book(booked['other_client'], booked['psychologist'], DAY, '10:00')
    monkeypatch.setattr(bookings.checker, 'is_available', lambda *args, **kwargs: True)

    with pytest.raises(SlotUnavailable):
        bookings.reschedule(booked['session'], DAY, '10:00')

    assert db.get(TherapySession, booked['session']).scheduled_time == 540
    assert db.get(TherapySession, other.booking.id).status == 'booked'


def test_reschedule_to_same_slot_is_rejected(bookings, booked) -> None:
    with pytest.raises(InvalidStateTransition):
        bookings.reschedule(booked['session'], DAY, '09:00')


def test_reschedule_to_past_date_is_rejected(bookings, booked) -> None:
    with pytest.raises(PastDateRejected):
        bookings.reschedule(booked['session'], date(2098, 11, 1), '09:00')


def test_rescheduled_session_cannot_be_rescheduled_again(bookings, booked) -> None:
    bookings.reschedule(booked['session'], DAY, '10:00')

    with pytest.raises(InvalidStateTransition):
        bookings.reschedule(booked['session'], DAY, '11:00')


def test_request_reschedule_keeps_original_slot(bookings, booked, db) -> None:
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')

    assert request.status == 'pending'
    assert request.requested_time == 600
    assert db.get(TherapySession, booked['session']).status == 'reschedule_requested'
    assert notification_types(db, booked['session']) == [NOTIFICATION_RESCHEDULE_REQUESTED]
    with pytest.raises(SlotUnavailable):
        bookings.book(booked['other_client'], booked['psychologist'], DAY, '09:00')


def test_request_reschedule_by_other_client_is_not_found(bookings, booked) -> None:
    with pytest.raises(NotFound):
        bookings.request_reschedule(booked['session'], booked['other_client'], DAY, '10:00')


def test_approve_reschedule_moves_session(bookings, booked, db) -> None:
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')

    result = bookings.approve_reschedule(request.id, booked['psychologist'])

    assert result.booking.status == 'rescheduled'
    assert result.booking.scheduled_time == 600
    assert db.get(RescheduleRequest, request.id).status == 'approved'
    assert db.get(RescheduleRequest, request.id).decided_at is not None
    assert notification_types(db, booked['session']) == [
        NOTIFICATION_RESCHEDULE_REQUESTED,
        NOTIFICATION_RESCHEDULE_APPROVED,
    ]
    assert bookings.store.get_day(booked['psychologist'], DAY).slots == frozenset({540, 660})


def test_approve_revalidates_requested_slot(bookings, booked, db) -> None:
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')
    bookings.book(booked['other_client'], booked['psychologist'], DAY, '10:00')

    with pytest.raises(SlotUnavailable) as exception_info:
        bookings.approve_reschedule(request.id, booked['psychologist'])

    assert exception_info.value.detail == 'Requested time slot is no longer available.'
    assert db.get(TherapySession, booked['session']).status == 'reschedule_requested'
    assert db.get(RescheduleRequest, request.id).status == 'pending'


def test_reject_reschedule_returns_session_to_booked(bookings, booked, db) -> None:
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')

    rejected = bookings.reject_reschedule(request.id, booked['psychologist'])

    session = db.get(TherapySession, booked['session'])
    assert rejected.status == 'rejected'
    assert session.status == 'booked'
    assert session.scheduled_time == 540
    assert notification_types(db, booked['session'])[-1] == NOTIFICATION_RESCHEDULE_REJECTED


def test_decided_request_cannot_be_decided_again(bookings, booked) -> None:
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')
    bookings.reject_reschedule(request.id, booked['psychologist'])

    with pytest.raises(InvalidStateTransition):
        bookings.approve_reschedule(request.id, booked['psychologist'])


def test_other_psychologist_cannot_decide_request(bookings, booked, db) -> None:
    stranger = Psychologist(first_name='Other', last_name='Therapist')
    db.add(stranger)
    db.commit()
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')

    with pytest.raises(NotFound):
        bookings.approve_reschedule(request.id, stranger.id)


def test_list_reschedule_requests_by_status(bookings, booked) -> None:
    request = bookings.request_reschedule(booked['session'], booked['client'], DAY, '10:00')

    pending = bookings.list_reschedule_requests(booked['psychologist'])
    bookings.reject_reschedule(request.id, booked['psychologist'])

    assert [item.id for item in pending] == [request.id]
    assert bookings.list_reschedule_requests(booked['psychologist']) == []
    assert len(bookings.list_reschedule_requests(booked['psychologist'], status=None)) == 1
