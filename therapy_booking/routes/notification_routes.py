from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.auth.dependencies import get_current_user
from therapy_booking.models.notification import (
    NOTIFICATION_RESCHEDULE_APPROVED,
    NOTIFICATION_RESCHEDULE_REJECTED,
    Notification,
)
from therapy_booking.models.user import ROLE_CLIENT, ROLE_PSYCHOLOGIST, User
from therapy_booking.routes.dependencies import current_client, current_psychologist, database_unavailable, get_db

router = APIRouter(tags=['notifications'])


class NotificationResponse(BaseModel):
    id: int
    session_id: int | None = None
    type: str
    message: str
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


def recipient_filter(user: User, db: Session):
    if user.role == ROLE_PSYCHOLOGIST:
        return Notification.psychologist_id == current_psychologist(user, db).id
    if user.role == ROLE_CLIENT:
        # Clients only see decisions on their own requests, not their own actions.
        return (Notification.client_id == current_client(user, db).id) & Notification.type.in_(
            [NOTIFICATION_RESCHEDULE_APPROVED, NOTIFICATION_RESCHEDULE_REJECTED]
        )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Notifications are not available for this user.')


@router.get('', response_model=list[NotificationResponse])
def list_notifications(
    unread_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    condition = recipient_filter(current_user, db)

    try:
        query = db.query(Notification).filter(condition)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(
            (page - 1) * limit
        ).limit(limit).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{notification_id}/read', response_model=NotificationResponse)
def mark_notification_read(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    condition = recipient_filter(current_user, db)

    try:
        notification = db.query(Notification).filter(Notification.id == notification_id, condition).first()
        if notification is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Notification not found.')

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            db.commit()
            db.refresh(notification)

        return notification
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
