"""Appointment model definitions."""

import enum
from datetime import datetime, timedelta

from sqlalchemy import Column, ForeignKey, Index, Integer, String
from backend.database import Base, UTCDateTime


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    NOT_INITIATED = "NOT_INITIATED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses that hold a doctor's time.
ACTIVE_STATUSES = (
    AppointmentStatus.PENDING.value,
    AppointmentStatus.APPROVED.value,
    AppointmentStatus.CONFIRMED.value,
)
TERMINAL_STATUSES = (
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.REJECTED.value,
    AppointmentStatus.CANCELLED.value,
)


class Appointment(Base):
    """Represents a requested or scheduled appointment."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    appointment_start = Column(UTCDateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.NOT_INITIATED.value)
    payment_expiry_time = Column(UTCDateTime)
    checkout_expiry_time = Column(UTCDateTime)
    stripe_session_id = Column(String)
    reminder_sent_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime)

    @property
    def appointment_end(self) -> datetime:
        return self.appointment_start + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


Index(
    "uq_appointments_doctor_active_start",
    Appointment.doctor_id,
    Appointment.appointment_start,
    unique=True,
    sqlite_where=Appointment.status.in_(ACTIVE_STATUSES),
    postgresql_where=Appointment.status.in_(ACTIVE_STATUSES),
)
