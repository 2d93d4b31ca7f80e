from datetime import date

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from therapy_booking.routes.session_routes import (
    CreateSessionRequest,
    RescheduleSessionRequest,
    approve_reschedule_request,
    book_session,
    cancel_session,
    complete_session,
    delete_session,
    get_session,
    list_reschedule_requests,
    list_sessions,
    request_reschedule,
    reschedule_session,
)

DAY = date(2099, 1, 10)


@pytest.fixture
def open_day(bookings, people):
    bookings.store.publish_day(people['psychologist'], DAY, ['09:00', '10:00', '11:00'])
    return people


def book_as(user, db, bookings, people, time='09:00'):
    return book_session(
        data=CreateSessionRequest(psychologist_id=people['psychologist'], scheduled_date=DAY, scheduled_time=time),
        current_user=user,
        db=db,
        bookings=bookings,
    )


def test_create_session_request_accepts_twelve_hour_time() -> None:
    request = CreateSessionRequest(psychologist_id=1, scheduled_date=DAY, scheduled_time='2:00 PM', notes='  ')

    assert request.scheduled_time == 840
    assert request.notes is None


def test_create_session_request_rejects_long_notes_and_bad_time() -> None:
    with pytest.raises(ValidationError):
        CreateSessionRequest(psychologist_id=1, scheduled_date=DAY, scheduled_time='09:00', notes='x' * 601)
    with pytest.raises(ValidationError):
        RescheduleSessionRequest(new_date=DAY, new_time='9 o clock')


def test_client_books_session(db, open_day, bookings) -> None:
    response = book_as(open_day['users']['client'], db, bookings, open_day, time='9:00 AM')

    assert response.session.scheduled_time == '09:00'
    assert response.session.display_time == '9:00 AM'
    assert response.session.status == 'booked'
    assert response.degraded is False
    assert response.warnings == []


def test_double_booking_returns_conflict(db, open_day, bookings) -> None:
    book_as(open_day['users']['client'], db, bookings, open_day)

    with pytest.raises(HTTPException) as exception_info:
        book_as(open_day['users']['other_client'], db, bookings, open_day)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Selected time slot is not available.'


def test_psychologist_cannot_book(db, open_day, bookings) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book_as(open_day['users']['psychologist'], db, bookings, open_day)

    assert exception_info.value.status_code == 403


def test_sessions_are_visible_only_to_their_parties(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)

    own = get_session(booked.session.id, current_user=open_day['users']['client'], db=db, bookings=bookings)
    provider = get_session(booked.session.id, current_user=open_day['users']['psychologist'], db=db, bookings=bookings)
    with pytest.raises(HTTPException) as exception_info:
        get_session(booked.session.id, current_user=open_day['users']['other_client'], db=db, bookings=bookings)

    assert own.id == provider.id == booked.session.id
    assert exception_info.value.status_code == 404


def test_list_sessions_scopes_to_current_user(db, open_day, bookings) -> None:
    book_as(open_day['users']['client'], db, bookings, open_day, time='09:00')
    book_as(open_day['users']['other_client'], db, bookings, open_day, time='10:00')

    mine = list_sessions(
        session_status=None,
        psychologist_id=None,
        client_id=open_day['other_client'],
        current_user=open_day['users']['client'],
        db=db,
        bookings=bookings,
    )
    everything = list_sessions(
        session_status=['booked'],
        psychologist_id=None,
        client_id=None,
        current_user=open_day['users']['admin'],
        db=db,
        bookings=bookings,
    )

    assert [session.scheduled_time for session in mine] == ['09:00']
    assert len(everything) == 2


def test_client_cancels_own_session(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)

    response = cancel_session(booked.session.id, current_user=open_day['users']['client'], db=db, bookings=bookings)

    assert response.session.status == 'canceled'
    assert bookings.store.get_day(open_day['psychologist'], DAY).slots == frozenset({540, 600, 660})


def test_cancel_twice_returns_conflict(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)
    cancel_session(booked.session.id, current_user=open_day['users']['admin'], db=db, bookings=bookings)

    with pytest.raises(HTTPException) as exception_info:
        cancel_session(booked.session.id, current_user=open_day['users']['client'], db=db, bookings=bookings)

    assert exception_info.value.status_code == 409


def test_client_must_request_reschedule(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)

    with pytest.raises(HTTPException) as exception_info:
        reschedule_session(
            booked.session.id,
            data=RescheduleSessionRequest(new_date=DAY, new_time='10:00'),
            current_user=open_day['users']['client'],
            db=db,
            bookings=bookings,
        )

    assert exception_info.value.status_code == 403


def test_psychologist_reschedules_directly(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)

    response = reschedule_session(
        booked.session.id,
        data=RescheduleSessionRequest(new_date=DAY, new_time='11:00 AM'),
        current_user=open_day['users']['psychologist'],
        db=db,
        bookings=bookings,
    )

    assert response.session.status == 'rescheduled'
    assert response.session.scheduled_time == '11:00'


def test_reschedule_request_approval_flow(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)

    created = request_reschedule(
        booked.session.id,
        data=RescheduleSessionRequest(new_date=DAY, new_time='10:00'),
        current_user=open_day['users']['client'],
        db=db,
        bookings=bookings,
    )
    pending = list_reschedule_requests(
        request_status='pending',
        current_user=open_day['users']['psychologist'],
        db=db,
        bookings=bookings,
    )
    approved = approve_reschedule_request(
        created.id,
        current_user=open_day['users']['psychologist'],
        db=db,
        bookings=bookings,
    )

    assert created.display_time == '10:00 AM'
    assert [item.id for item in pending] == [created.id]
    assert approved.session.status == 'rescheduled'
    assert approved.session.scheduled_time == '10:00'


def test_complete_and_delete_rules(db, open_day, bookings) -> None:
    booked = book_as(open_day['users']['client'], db, bookings, open_day)

    with pytest.raises(HTTPException) as client_complete:
        complete_session(booked.session.id, current_user=open_day['users']['client'], db=db, bookings=bookings)
    completed = complete_session(booked.session.id, current_user=open_day['users']['psychologist'], db=db, bookings=bookings)
    with pytest.raises(HTTPException) as delete_completed:
        delete_session(booked.session.id, current_user=open_day['users']['admin'], bookings=bookings)
    with pytest.raises(HTTPException) as delete_by_client:
        delete_session(booked.session.id, current_user=open_day['users']['client'], bookings=bookings)

    assert client_complete.value.status_code == 403
    assert completed.status == 'completed'
    assert delete_completed.value.status_code == 409
    assert delete_by_client.value.status_code == 403
