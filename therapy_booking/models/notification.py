"""In-app notification model definitions."""

from datetime import datetime

from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey, String
from therapy_booking.database import Base


NOTIFICATION_RESCHEDULE_REQUESTED = "reschedule_requested"
NOTIFICATION_RESCHEDULE_APPROVED = "reschedule_approved"
NOTIFICATION_RESCHEDULE_REJECTED = "reschedule_rejected"
NOTIFICATION_SESSION_CANCELLED = "session_cancelled"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=True)
    type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
