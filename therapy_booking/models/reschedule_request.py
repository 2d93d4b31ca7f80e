"""Reschedule request model definitions."""

from datetime import datetime

from sqlalchemy import Column, Integer, Date, DateTime, ForeignKey, String
from therapy_booking.database import Base


class RescheduleRequest(Base):
    """A client's proposed new date/time awaiting the psychologist's decision."""
    __tablename__ = "reschedule_requests"

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    requested_by = Column(Integer, ForeignKey("clients.id"), nullable=False)
    requested_date = Column(Date, nullable=False)
    requested_time = Column(Integer, nullable=False)  # minutes since midnight
    status = Column(String, nullable=False, default="pending")  # pending/approved/rejected
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
