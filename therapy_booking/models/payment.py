"""Payment model definitions."""

from datetime import datetime

from sqlalchemy import Column, Integer, Date, DateTime, ForeignKey, JSON, Numeric, String
from therapy_booking.database import Base


class Payment(Base):
    """A gateway transaction that books a session once confirmed."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String, unique=True, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Integer, nullable=False)  # minutes since midnight
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending/success/failed/slot_conflict
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
