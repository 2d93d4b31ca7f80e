"""Psychologist (provider) model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, String
from therapy_booking.database import Base


class Psychologist(Base):
    """A provider that publishes availability and receives bookings."""
    __tablename__ = "psychologists"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
