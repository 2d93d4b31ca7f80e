"""Client model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, String
from therapy_booking.database import Base


class Client(Base):
    """A client who books sessions, often on behalf of a child."""
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    child_name = Column(String, nullable=True)
    email = Column(String, nullable=True)

    @property
    def display_name(self) -> str:
        return self.child_name or f"{self.first_name} {self.last_name}".strip()
