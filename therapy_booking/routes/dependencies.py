from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.core.errors import BookingError
from therapy_booking.models.client import Client
from therapy_booking.models.psychologist import Psychologist
from therapy_booking.models.user import ROLE_ADMIN, ROLE_CLIENT, ROLE_PSYCHOLOGIST, User
from therapy_booking.services.booking_service import BookingService
from therapy_booking.services.collaborators import Collaborators
from therapy_booking.services.payment_service import PaymentService


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_collaborators(request: Request) -> Collaborators:
    return getattr(request.app.state, 'collaborators', None) or Collaborators()


def get_booking_service(
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> BookingService:
    return BookingService(db, collaborators=collaborators)


def get_payment_service(
    db: Session = Depends(get_db),
    bookings: BookingService = Depends(get_booking_service),
) -> PaymentService:
    return PaymentService(db, bookings)


def http_error(exc: BookingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail='Database unavailable. Verify DATABASE_URL and Postgres credentials.',
    )


def is_admin(user: User) -> bool:
    return user.role == ROLE_ADMIN


def current_client(user: User, db: Session) -> Client:
    if user.role != ROLE_CLIENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only clients can do this.')
    try:
        client = db.query(Client).filter(Client.user_id == user.id).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Client profile not found.')
    return client


def current_psychologist(user: User, db: Session) -> Psychologist:
    if user.role != ROLE_PSYCHOLOGIST:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only psychologists can do this.')
    try:
        psychologist = db.query(Psychologist).filter(Psychologist.user_id == user.id).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
    if psychologist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Psychologist profile not found.')
    return psychologist


def resolve_provider_id(user: User, db: Session, requested_id: int | None) -> int:
    """Admins act on any psychologist; psychologists only on themselves."""
    if is_admin(user):
        if requested_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='psychologist_id is required.')
        return requested_id

    psychologist = current_psychologist(user, db)
    if requested_id is not None and requested_id != psychologist.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Psychologists can only manage their own availability.',
        )
    return psychologist.id
