from datetime import date

import pytest
from fastapi import HTTPException

from therapy_booking.routes.notification_routes import list_notifications, mark_notification_read

DAY = date(2099, 1, 10)


@pytest.fixture
def requested(bookings, people):
    bookings.store.publish_day(people['psychologist'], DAY, ['09:00', '10:00'])
    result = bookings.book(people['client'], people['psychologist'], DAY, '09:00')
    request = bookings.request_reschedule(result.booking.id, people['client'], DAY, '10:00')
    return {**people, 'request': request.id}


def list_for(user, db, unread_only=False):
    return list_notifications(unread_only=unread_only, page=1, limit=20, current_user=user, db=db)


def test_psychologist_sees_reschedule_request(db, requested) -> None:
    notifications = list_for(requested['users']['psychologist'], db)

    assert [notification.type for notification in notifications] == ['reschedule_requested']


def test_client_only_sees_decisions(db, requested, bookings) -> None:
    assert list_for(requested['users']['client'], db) == []

    bookings.reject_reschedule(requested['request'], requested['psychologist'])

    assert [notification.type for notification in list_for(requested['users']['client'], db)] == [
        'reschedule_rejected',
    ]


def test_mark_read_hides_from_unread_list(db, requested) -> None:
    user = requested['users']['psychologist']
    notification = list_for(user, db)[0]

    marked = mark_notification_read(notification.id, current_user=user, db=db)

    assert marked.is_read is True
    assert marked.read_at is not None
    assert list_for(user, db, unread_only=True) == []


def test_cannot_mark_someone_elses_notification(db, requested) -> None:
    notification = list_for(requested['users']['psychologist'], db)[0]

    with pytest.raises(HTTPException) as exception_info:
        mark_notification_read(notification.id, current_user=requested['users']['other_client'], db=db)

    assert exception_info.value.status_code == 404


def test_admin_has_no_notification_inbox(db, requested) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_for(requested['users']['admin'], db)

    assert exception_info.value.status_code == 403
