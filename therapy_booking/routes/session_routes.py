from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from therapy_booking.auth.dependencies import get_current_user
from therapy_booking.core.errors import BookingError, InvalidTimeFormat
from therapy_booking.core.time_of_day import TimeStyle, coerce_slot, format_time_of_day
from therapy_booking.models.reschedule_request import RescheduleRequest
from therapy_booking.models.session import TherapySession
from therapy_booking.models.user import ROLE_CLIENT, ROLE_PSYCHOLOGIST, User
from therapy_booking.routes.dependencies import (
    current_client,
    current_psychologist,
    get_booking_service,
    get_db,
    http_error,
    is_admin,
)
from therapy_booking.services.booking_service import BookingMeta, BookingResult, BookingService

router = APIRouter(tags=['sessions'])

MAX_SESSION_NOTES_LENGTH = 600


def parse_slot(value):
    try:
        return coerce_slot(value)
    except InvalidTimeFormat as exc:
        raise ValueError(exc.detail) from exc


class CreateSessionRequest(BaseModel):
    psychologist_id: int
    scheduled_date: date
    scheduled_time: int
    package_id: int | None = None
    client_package_id: int | None = None
    notes: str | None = None

    @field_validator('scheduled_time', mode='before')
    @classmethod
    def validate_scheduled_time(cls, value):
        return parse_slot(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_SESSION_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_SESSION_NOTES_LENGTH} characters or fewer.')

        return normalized


class RescheduleSessionRequest(BaseModel):
    new_date: date
    new_time: int

    @field_validator('new_time', mode='before')
    @classmethod
    def validate_new_time(cls, value):
        return parse_slot(value)


class SessionResponse(BaseModel):
    id: int
    client_id: int
    psychologist_id: int
    scheduled_date: date
    scheduled_time: str
    display_time: str
    status: str
    price: Decimal | None = None
    package_id: int | None = None
    meeting_url: str | None = None
    notes: str | None = None


class BookingResponse(BaseModel):
    session: SessionResponse
    degraded: bool
    warnings: list[str]


class RescheduleRequestResponse(BaseModel):
    id: int
    session_id: int
    requested_date: date
    requested_time: str
    display_time: str
    status: str
    created_at: datetime | None = None
    decided_at: datetime | None = None


def session_response(booking: TherapySession) -> SessionResponse:
    return SessionResponse(
        id=booking.id,
        client_id=booking.client_id,
        psychologist_id=booking.psychologist_id,
        scheduled_date=booking.scheduled_date,
        scheduled_time=format_time_of_day(booking.scheduled_time),
        display_time=format_time_of_day(booking.scheduled_time, TimeStyle.H12),
        status=booking.status,
        price=booking.price,
        package_id=booking.package_id,
        meeting_url=booking.meeting_url,
        notes=booking.notes,
    )


def booking_response(result: BookingResult) -> BookingResponse:
    return BookingResponse(
        session=session_response(result.booking),
        degraded=result.degraded,
        warnings=result.warnings,
    )


def reschedule_request_response(request: RescheduleRequest) -> RescheduleRequestResponse:
    return RescheduleRequestResponse(
        id=request.id,
        session_id=request.session_id,
        requested_date=request.requested_date,
        requested_time=format_time_of_day(request.requested_time),
        display_time=format_time_of_day(request.requested_time, TimeStyle.H12),
        status=request.status,
        created_at=request.created_at,
        decided_at=request.decided_at,
    )


def require_admin(user: User) -> None:
    if not is_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only admins can do this.')


def load_visible_session(session_id: int, user: User, db: Session, bookings: BookingService) -> TherapySession:
    try:
        booking = bookings.get_booking(session_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    if is_admin(user):
        return booking
    if user.role == ROLE_CLIENT and booking.client_id == current_client(user, db).id:
        return booking
    if user.role == ROLE_PSYCHOLOGIST and booking.psychologist_id == current_psychologist(user, db).id:
        return booking
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found.')


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def book_session(
    data: CreateSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    client = current_client(current_user, db)

    try:
        result = bookings.book(
            client.id,
            data.psychologist_id,
            data.scheduled_date,
            data.scheduled_time,
            BookingMeta(
                package_id=data.package_id,
                client_package_id=data.client_package_id,
                notes=data.notes,
            ),
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    return booking_response(result)


@router.get('', response_model=list[SessionResponse])
def list_sessions(
    session_status: list[str] | None = Query(default=None, alias='status'),
    psychologist_id: int | None = Query(default=None),
    client_id: int | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    if current_user.role == ROLE_CLIENT:
        client_id = current_client(current_user, db).id
    elif current_user.role == ROLE_PSYCHOLOGIST:
        psychologist_id = current_psychologist(current_user, db).id
    else:
        require_admin(current_user)

    try:
        sessions = bookings.list_bookings(client_id=client_id, provider_id=psychologist_id, statuses=session_status)
    except BookingError as exc:
        raise http_error(exc) from exc

    return [session_response(booking) for booking in sessions]


@router.get('/reschedule-requests', response_model=list[RescheduleRequestResponse])
def list_reschedule_requests(
    request_status: str | None = Query(default='pending', alias='status'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    psychologist = current_psychologist(current_user, db)

    try:
        requests = bookings.list_reschedule_requests(psychologist.id, request_status)
    except BookingError as exc:
        raise http_error(exc) from exc

    return [reschedule_request_response(request) for request in requests]


@router.post('/reschedule-requests/{request_id}/approve', response_model=BookingResponse)
def approve_reschedule_request(
    request_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    psychologist = current_psychologist(current_user, db)

    try:
        result = bookings.approve_reschedule(request_id, psychologist.id)
    except BookingError as exc:
        raise http_error(exc) from exc

    return booking_response(result)


@router.post('/reschedule-requests/{request_id}/reject', response_model=RescheduleRequestResponse)
def reject_reschedule_request(
    request_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    psychologist = current_psychologist(current_user, db)

    try:
        request = bookings.reject_reschedule(request_id, psychologist.id)
    except BookingError as exc:
        raise http_error(exc) from exc

    return reschedule_request_response(request)


@router.get('/{session_id}', response_model=SessionResponse)
def get_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    return session_response(load_visible_session(session_id, current_user, db, bookings))


@router.post('/{session_id}/cancel', response_model=BookingResponse)
def cancel_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    actor_id = None if is_admin(current_user) else current_client(current_user, db).id

    try:
        result = bookings.cancel(session_id, actor_id=actor_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    return booking_response(result)


@router.post('/{session_id}/reschedule', response_model=BookingResponse)
def reschedule_session(
    session_id: int,
    data: RescheduleSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    load_visible_session(session_id, current_user, db, bookings)
    if current_user.role == ROLE_CLIENT:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Clients must request a reschedule from their psychologist.',
        )

    try:
        result = bookings.reschedule(session_id, data.new_date, data.new_time)
    except BookingError as exc:
        raise http_error(exc) from exc

    return booking_response(result)


@router.post(
    '/{session_id}/reschedule-requests',
    response_model=RescheduleRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
def request_reschedule(
    session_id: int,
    data: RescheduleSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    client = current_client(current_user, db)

    try:
        request = bookings.request_reschedule(session_id, client.id, data.new_date, data.new_time)
    except BookingError as exc:
        raise http_error(exc) from exc

    return reschedule_request_response(request)


@router.post('/{session_id}/complete', response_model=SessionResponse)
def complete_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    load_visible_session(session_id, current_user, db, bookings)
    if current_user.role == ROLE_CLIENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Clients cannot complete sessions.')

    try:
        booking = bookings.complete(session_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    return session_response(booking)


@router.delete('/{session_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    bookings: BookingService = Depends(get_booking_service),
):
    require_admin(current_user)

    try:
        bookings.delete_booking(session_id)
    except BookingError as exc:
        raise http_error(exc) from exc
