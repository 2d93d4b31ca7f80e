"""Therapy session (booking) model definitions."""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, Date, DateTime, ForeignKey, Index, Numeric, String
from therapy_booking.database import Base


class SessionStatus(str, enum.Enum):
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    RESCHEDULED = "rescheduled"
    CANCELED = "canceled"
    COMPLETED = "completed"


# Statuses that occupy (psychologist, date, time). A session waiting on a
# reschedule decision still owns its original slot.
HOLDING_STATUSES = (
    SessionStatus.BOOKED.value,
    SessionStatus.CONFIRMED.value,
    SessionStatus.RESCHEDULED.value,
    SessionStatus.RESCHEDULE_REQUESTED.value,
)


class TherapySession(Base):
    """Represents one scheduled appointment between a client and a psychologist."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Integer, nullable=False)  # minutes since midnight
    status = Column(String, nullable=False, default=SessionStatus.BOOKED.value)
    price = Column(Numeric(10, 2), nullable=True)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    client_package_id = Column(Integer, ForeignKey("client_packages.id"), nullable=True)
    payment_id = Column(Integer, nullable=True)
    meeting_url = Column(String, nullable=True)
    calendar_event_id = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


ACTIVE_SLOT_INDEX = Index(
    "uq_sessions_active_slot",
    TherapySession.psychologist_id,
    TherapySession.scheduled_date,
    TherapySession.scheduled_time,
    unique=True,
    postgresql_where=TherapySession.status.in_(HOLDING_STATUSES),
    sqlite_where=TherapySession.status.in_(HOLDING_STATUSES),
)
