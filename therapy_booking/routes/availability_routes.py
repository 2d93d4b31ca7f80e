from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.auth.dependencies import get_current_user
from therapy_booking.core.errors import BookingError, InvalidTimeFormat, SlotUnavailable
from therapy_booking.core.time_of_day import TimeStyle, coerce_slot, format_time_of_day
from therapy_booking.models.psychologist import Psychologist
from therapy_booking.models.user import User
from therapy_booking.routes.dependencies import (
    database_unavailable,
    get_booking_service,
    get_db,
    http_error,
    resolve_provider_id,
)
from therapy_booking.services.booking_service import BookingService

router = APIRouter(tags=['availability'])

MAX_SLOTS_PER_DAY = 24


def normalize_time_slots(value) -> list[int]:
    if not isinstance(value, list):
        raise ValueError('time_slots must be a list.')
    try:
        slots = sorted({coerce_slot(item) for item in value})
    except InvalidTimeFormat as exc:
        raise ValueError(exc.detail) from exc
    if len(slots) > MAX_SLOTS_PER_DAY:
        raise ValueError(f'At most {MAX_SLOTS_PER_DAY} slots can be published per day.')
    return slots


class PublishDayRequest(BaseModel):
    psychologist_id: int | None = None
    date: date
    time_slots: list[int]

    @field_validator('time_slots', mode='before')
    @classmethod
    def validate_time_slots(cls, value):
        return normalize_time_slots(value)


class BulkDayEntry(BaseModel):
    date: date
    time_slots: list[int]

    @field_validator('time_slots', mode='before')
    @classmethod
    def validate_time_slots(cls, value):
        return normalize_time_slots(value)


class PublishBulkRequest(BaseModel):
    psychologist_id: int | None = None
    availability_data: list[BulkDayEntry]


class DayAvailabilityResponse(BaseModel):
    psychologist_id: int
    date: date
    time_slots: list[str]
    display_slots: list[str]
    is_available: bool


class BulkErrorResponse(BaseModel):
    date: date
    error: str


class BulkPublishResponse(BaseModel):
    successful: list[DayAvailabilityResponse]
    errors: list[BulkErrorResponse]


class DaySummaryResponse(BaseModel):
    date: date
    available_slots: list[str]
    booked_slots: list[str]
    total_slots: int
    available_count: int


class OpenSlotsResponse(BaseModel):
    psychologist_id: int
    date: date
    available_slots: list[str]
    booked_slots: list[str]
    all_slots: list[str]


def render_slots(slots, style: TimeStyle = TimeStyle.H24) -> list[str]:
    return [format_time_of_day(slot, style) for slot in sorted(slots)]


def day_response(provider_id: int, day: date, slots, is_available: bool) -> DayAvailabilityResponse:
    return DayAvailabilityResponse(
        psychologist_id=provider_id,
        date=day,
        time_slots=render_slots(slots),
        display_slots=render_slots(slots, TimeStyle.H12),
        is_available=is_available,
    )


def ensure_psychologist_exists(provider_id: int, db: Session) -> None:
    try:
        psychologist = db.get(Psychologist, provider_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
    if psychologist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Psychologist not found.')


def publish_one_day(bookings: BookingService, provider_id: int, day: date, slots: list[int]):
    held = bookings.checker.held_slots(provider_id, day) & set(slots)
    if held:
        raise SlotUnavailable(f'Time slots {", ".join(render_slots(held))} are already booked.')
    return bookings.store.publish_day(provider_id, day, slots)


@router.post('/days', response_model=DayAvailabilityResponse)
def publish_day(
    data: PublishDayRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    provider_id = resolve_provider_id(current_user, db, data.psychologist_id)
    ensure_psychologist_exists(provider_id, db)

    try:
        published = publish_one_day(bookings, provider_id, data.date, data.time_slots)
    except BookingError as exc:
        raise http_error(exc) from exc

    return day_response(provider_id, data.date, published.slots, published.is_published)


@router.post('/days/bulk', response_model=BulkPublishResponse)
def publish_days_bulk(
    data: PublishBulkRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    provider_id = resolve_provider_id(current_user, db, data.psychologist_id)
    ensure_psychologist_exists(provider_id, db)

    successful: list[DayAvailabilityResponse] = []
    errors: list[BulkErrorResponse] = []
    for entry in data.availability_data:
        try:
            published = publish_one_day(bookings, provider_id, entry.date, entry.time_slots)
        except BookingError as exc:
            errors.append(BulkErrorResponse(date=entry.date, error=exc.detail))
            continue
        successful.append(day_response(provider_id, entry.date, published.slots, published.is_published))

    return BulkPublishResponse(successful=successful, errors=errors)


@router.get('', response_model=list[DaySummaryResponse])
def list_availability(
    psychologist_id: int = Query(...),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    bookings: BookingService = Depends(get_booking_service),
):
    try:
        days = bookings.store.list_days(psychologist_id, start_date, end_date)
        held_by_date = bookings.checker.held_slots_by_date(psychologist_id, start_date, end_date)
    except BookingError as exc:
        raise http_error(exc) from exc

    summaries: list[DaySummaryResponse] = []
    for record in days:
        published = set(record.time_slots or ())
        held = held_by_date.get(record.date, set())
        open_slots = published - held
        summaries.append(
            DaySummaryResponse(
                date=record.date,
                available_slots=render_slots(open_slots),
                booked_slots=render_slots(held),
                total_slots=len(published),
                available_count=len(open_slots),
            )
        )
    return summaries


@router.get('/slots', response_model=OpenSlotsResponse)
def list_open_slots(
    psychologist_id: int = Query(...),
    day: date = Query(..., alias='date'),
    bookings: BookingService = Depends(get_booking_service),
):
    try:
        published = bookings.store.get_day(psychologist_id, day)
        held = bookings.checker.held_slots(psychologist_id, day)
    except BookingError as exc:
        raise http_error(exc) from exc

    return OpenSlotsResponse(
        psychologist_id=psychologist_id,
        date=day,
        available_slots=render_slots(published.slots - held),
        booked_slots=render_slots(held),
        all_slots=render_slots(published.slots),
    )


@router.delete('/days/{psychologist_id}/{day}', status_code=status.HTTP_204_NO_CONTENT)
def delete_day(
    psychologist_id: int,
    day: date,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
):
    provider_id = resolve_provider_id(current_user, db, psychologist_id)

    try:
        if bookings.checker.held_slots(provider_id, day):
            raise SlotUnavailable('Cannot delete availability with existing sessions.')
        bookings.store.delete_day(provider_id, day)
    except BookingError as exc:
        raise http_error(exc) from exc
