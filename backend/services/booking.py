import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.clock import clinic_date, ensure_utc
from backend.core.errors import DoctorNotFound, LeadTimeViolation, SlotUnavailable
from backend.models.appointment import Appointment
from backend.models.user import DOCTOR_ROLE, User
from backend.services import appointments, notifications
from backend.services.notifications import Notifier
from backend.services.slots import REASON_BOOKED, REASON_LEAD_TIME, REASON_PAST, load_slots

logger = logging.getLogger(__name__)


def lock_doctor(db: Session, doctor_id: int) -> User:
    """Row-lock the doctor so concurrent bookings for them queue up."""
    doctor = db.query(User).filter(
        User.id == doctor_id,
        User.role == DOCTOR_ROLE,
    ).with_for_update().first()
    if doctor is None:
        raise DoctorNotFound()
    return doctor


def book_appointment(
    db: Session,
    doctor_id: int,
    patient_id: int,
    desired_start: datetime,
    now: datetime,
    notifier: Notifier | None = None,
) -> Appointment:
    """Re-validate the slot at write time and create a PENDING appointment.

    Availability is recomputed inside the inserting transaction, never taken
    from what the client saw. The partial unique index on active appointments
    catches anything that slips past a stale read.
    """
    desired_start = ensure_utc(desired_start)
    if desired_start.second or desired_start.microsecond:
        raise SlotUnavailable('Appointments must start on a slot boundary.')

    try:
        lock_doctor(db, doctor_id)

        slots = load_slots(db, doctor_id, clinic_date(desired_start), now)
        slot = next((candidate for candidate in slots if candidate.start_time == desired_start), None)

        if slot is None:
            raise SlotUnavailable('Doctor is not available at this time.')
        if slot.reason in (REASON_PAST, REASON_LEAD_TIME):
            raise LeadTimeViolation()
        if slot.reason == REASON_BOOKED:
            raise SlotUnavailable('This time slot is already booked.')

        appointment = appointments.create_appointment(db, doctor_id, patient_id, desired_start, now)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info('Concurrent booking for doctor %s at %s lost the race', doctor_id, desired_start.isoformat())
        raise SlotUnavailable('This time slot has already been booked by another patient.') from exc
    except Exception:
        db.rollback()
        raise

    appointment = appointments.get_appointment(db, appointment.id)
    logger.info('Appointment %s requested by patient %s with doctor %s', appointment.id, patient_id, doctor_id)

    if notifier is not None:
        notifications.notify(notifier, notifications.BOOKING_REQUESTED, appointment, doctor_id)
    return appointment
