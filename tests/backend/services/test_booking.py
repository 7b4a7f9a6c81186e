from datetime import datetime, timedelta

import pytest

from backend.core.clock import CLINIC_TZ
from backend.core.errors import DoctorNotFound, LeadTimeViolation, SlotUnavailable
from backend.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from backend.services import appointments
from backend.services.booking import book_appointment
from backend.services.notifications import BOOKING_REQUESTED
from backend.services.slots import Slot


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=CLINIC_TZ)


NOW = at(4, 8)


def test_book_appointment_creates_pending_request(db, doctor, patient, monday_morning, notifier) -> None:
    appointment = book_appointment(db, doctor.id, patient.id, at(5, 9, 30), NOW, notifier)

    assert appointment.status == AppointmentStatus.PENDING.value
    assert appointment.payment_status == PaymentStatus.NOT_INITIATED.value
    assert appointment.appointment_start == at(5, 9, 30)
    assert appointment.duration_minutes == 30
    assert appointment.created_at == NOW
    assert appointment.payment_expiry_time is None
    assert notifier.sent == [(BOOKING_REQUESTED, appointment.id, doctor.id)]


def test_second_booking_of_same_slot_is_rejected(session_factory, doctor, patient, monday_morning) -> None:
    first_caller = session_factory()
    second_caller = session_factory()
    try:
        book_appointment(first_caller, doctor.id, patient.id, at(5, 9, 0), NOW)

        with pytest.raises(SlotUnavailable):
            book_appointment(second_caller, doctor.id, patient.id, at(5, 9, 0), NOW)

        pending = second_caller.query(Appointment).filter(
            Appointment.doctor_id == doctor.id,
            Appointment.status == AppointmentStatus.PENDING.value,
        ).count()
        assert pending == 1
    finally:
        first_caller.close()
        second_caller.close()


def test_unique_index_catches_stale_availability(db, doctor, patient, monday_morning, monkeypatch) -> None:
    appointments.create_appointment(db, doctor.id, patient.id, at(5, 9, 0), NOW)
    db.commit()

    stale_snapshot = [Slot(time='09:00', start_time=at(5, 9, 0), end_time=at(5, 9, 30), is_available=True)]
    monkeypatch.setattr('backend.services.booking.load_slots', lambda *args: stale_snapshot)

    with pytest.raises(SlotUnavailable) as exception_info:
        book_appointment(db, doctor.id, patient.id, at(5, 9, 0), NOW)

    assert 'another patient' in exception_info.value.message
    assert db.query(Appointment).count() == 1


def test_booking_inside_lead_time_is_refused(db, doctor, patient, monday_morning) -> None:
    with pytest.raises(LeadTimeViolation):
        book_appointment(db, doctor.id, patient.id, at(5, 9, 0), at(4, 9, 30))


def test_booking_in_the_past_is_refused(db, doctor, patient, monday_morning) -> None:
    with pytest.raises(LeadTimeViolation):
        book_appointment(db, doctor.id, patient.id, at(5, 9, 0), at(5, 12, 0))


@pytest.mark.parametrize('start', [at(5, 9, 15), at(5, 8, 30), at(5, 11, 0), at(6, 9, 0)])
def test_booking_outside_generated_slots_is_refused(db, doctor, patient, monday_morning, start) -> None:
    with pytest.raises(SlotUnavailable):
        book_appointment(db, doctor.id, patient.id, start, NOW)


@pytest.mark.parametrize('offset', [timedelta(seconds=59), timedelta(microseconds=1)])
def test_booking_off_the_minute_is_refused(db, doctor, patient, monday_morning, offset) -> None:
    with pytest.raises(SlotUnavailable):
        book_appointment(db, doctor.id, patient.id, at(5, 9, 0) + offset, NOW)

    assert db.query(Appointment).count() == 0


def test_booking_requires_a_doctor(db, doctor, patient, monday_morning) -> None:
    with pytest.raises(DoctorNotFound):
        book_appointment(db, patient.id, patient.id, at(5, 9, 0), NOW)

    with pytest.raises(DoctorNotFound):
        book_appointment(db, 999, patient.id, at(5, 9, 0), NOW)


def test_rejected_request_frees_the_slot(db, doctor, patient, monday_morning) -> None:
    first = book_appointment(db, doctor.id, patient.id, at(5, 10, 0), NOW)
    appointments.reject_appointment(db, first.id, doctor.id, NOW)

    second = book_appointment(db, doctor.id, patient.id, at(5, 10, 0), NOW)

    assert second.id != first.id
    assert second.status == AppointmentStatus.PENDING.value


def test_booking_accepts_utc_instants(db, doctor, patient, monday_morning) -> None:
    appointment = book_appointment(db, doctor.id, patient.id, datetime.fromisoformat('2026-01-05T03:30:00+00:00'), NOW)

    assert appointment.appointment_start == at(5, 9, 0)
