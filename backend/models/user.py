"""User model definitions."""

from sqlalchemy import Column, Integer, String
from backend.database import Base

PATIENT_ROLE = "patient"
DOCTOR_ROLE = "doctor"


class User(Base):
    """Represents an application user (patient or doctor)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    hashed_password = Column(String)
    role = Column(String)  # patient/doctor
    first_name = Column(String)
    last_name = Column(String)
    consultation_fee = Column(Integer)  # doctors only, major currency units

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or self.email
