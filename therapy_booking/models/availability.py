"""Availability model definitions."""

from datetime import datetime

from sqlalchemy import Column, Integer, Date, DateTime, Boolean, ForeignKey, JSON, UniqueConstraint
from therapy_booking.database import Base


class Availability(Base):
    """Open slots a psychologist has published for one date.

    ``time_slots`` is a sorted list of minutes since midnight. ``version`` is
    bumped on every write so concurrent slot removals can detect each other.
    """
    __tablename__ = "availability"
    __table_args__ = (
        UniqueConstraint("psychologist_id", "date", name="uq_availability_psychologist_date"),
    )

    id = Column(Integer, primary_key=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    time_slots = Column(JSON, nullable=False, default=list)
    is_available = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
