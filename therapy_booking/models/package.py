"""Session package model definitions."""

from datetime import datetime

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Numeric, String
from therapy_booking.database import Base


class Package(Base):
    """A bundle of sessions offered by one psychologist."""
    __tablename__ = "packages"

    id = Column(Integer, primary_key=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False, index=True)
    package_type = Column(String, nullable=False)
    session_count = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False)
    description = Column(String, nullable=True)


class ClientPackage(Base):
    """Sessions a client has purchased and not yet used."""
    __tablename__ = "client_packages"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=False)
    total_sessions = Column(Integer, nullable=False)
    remaining_sessions = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="active")  # active/exhausted
    purchased_at = Column(DateTime, default=datetime.utcnow)
    first_session_id = Column(Integer, nullable=True)
