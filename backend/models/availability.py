"""Weekly availability model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from backend.database import Base


class WeeklyAvailability(Base):
    """A recurring weekly working window of one doctor.

    ``day_of_week`` counts from Sunday (0) to Saturday (6); ``start_time`` and
    ``end_time`` are "HH:MM" wall-clock times in the clinic timezone.
    """
    __tablename__ = "weekly_availability"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
