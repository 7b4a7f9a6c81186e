from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from backend.core.clock import CLINIC_TZ
from backend.core.errors import AppointmentNotFound, InvalidTransition, LeadTimeViolation
from backend.models.appointment import AppointmentStatus, PaymentStatus
from backend.routes.appointment_routes import (
    CreateAppointmentRequest,
    UpdateAppointmentStatusRequest,
    create_appointment,
    list_doctor_appointments,
    list_my_appointments,
    update_appointment_status,
)
from backend.services.notifications import APPOINTMENT_APPROVED, BOOKING_REQUESTED


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=CLINIC_TZ)


def test_create_appointment_request_requires_timezone() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(doctor_id=1, appointment_start=datetime(2026, 1, 5, 9, 0))

    request = CreateAppointmentRequest(doctor_id=1, appointment_start='2026-01-05T09:00:00+05:30')
    assert request.appointment_start == at(5, 9, 0)


def test_update_status_request_normalizes_case() -> None:
    assert UpdateAppointmentStatusRequest(status=' approved ').status == 'APPROVED'

    with pytest.raises(ValidationError):
        UpdateAppointmentStatusRequest(status='CONFIRMED')


def test_create_appointment_books_pending_request(
    db, doctor, patient, monday_morning, clock, notifier, skip_schema_checks
) -> None:
    appointment = create_appointment(
        data=CreateAppointmentRequest(doctor_id=doctor.id, appointment_start=at(5, 10, 30)),
        current_user=patient,
        db=db,
        clock=clock,
        notifier=notifier,
    )

    assert appointment.status == AppointmentStatus.PENDING.value
    assert appointment.patient_id == patient.id
    assert notifier.sent == [(BOOKING_REQUESTED, appointment.id, doctor.id)]


def test_create_appointment_surfaces_lead_time_violation(
    db, doctor, patient, monday_morning, clock, notifier, skip_schema_checks
) -> None:
    clock.advance(timedelta(hours=10))

    with pytest.raises(LeadTimeViolation) as exception_info:
        create_appointment(
            data=CreateAppointmentRequest(doctor_id=doctor.id, appointment_start=at(5, 9, 0)),
            current_user=patient,
            db=db,
            clock=clock,
            notifier=notifier,
        )

    assert exception_info.value.status_code == 400


def _book(db, doctor, patient, clock, notifier, start):
    return create_appointment(
        data=CreateAppointmentRequest(doctor_id=doctor.id, appointment_start=start),
        current_user=patient,
        db=db,
        clock=clock,
        notifier=notifier,
    )


def test_doctor_approves_and_patient_sees_payment_deadline(
    db, doctor, patient, monday_morning, clock, notifier, skip_schema_checks
) -> None:
    booked = _book(db, doctor, patient, clock, notifier, at(5, 9, 0))

    approved = update_appointment_status(
        appointment_id=booked.id,
        data=UpdateAppointmentStatusRequest(status='APPROVED'),
        current_user=doctor,
        db=db,
        clock=clock,
        notifier=notifier,
    )

    assert approved.status == AppointmentStatus.APPROVED.value
    assert approved.payment_status == PaymentStatus.NOT_INITIATED.value
    assert approved.payment_expiry_time == clock.now() + timedelta(minutes=20)
    assert notifier.sent[-1] == (APPOINTMENT_APPROVED, booked.id, patient.id)

    page = list_my_appointments(type='upcoming', page=1, limit=10, current_user=patient, db=db, clock=clock)
    assert page.pagination.total == 1
    assert page.appointments[0].payment_expiry_time == approved.payment_expiry_time
    assert page.appointments[0].appointment_end == at(5, 9, 30)


def test_second_decision_is_refused(db, doctor, patient, monday_morning, clock, notifier, skip_schema_checks) -> None:
    booked = _book(db, doctor, patient, clock, notifier, at(5, 9, 0))
    decide = dict(appointment_id=booked.id, current_user=doctor, db=db, clock=clock, notifier=notifier)

    update_appointment_status(data=UpdateAppointmentStatusRequest(status='REJECTED'), **decide)

    with pytest.raises(InvalidTransition) as exception_info:
        update_appointment_status(data=UpdateAppointmentStatusRequest(status='APPROVED'), **decide)

    assert exception_info.value.status_code == 409


def test_doctor_cannot_decide_other_doctors_appointment(
    db, doctor, patient, monday_morning, clock, notifier, skip_schema_checks
) -> None:
    booked = _book(db, doctor, patient, clock, notifier, at(5, 9, 0))

    with pytest.raises(AppointmentNotFound):
        update_appointment_status(
            appointment_id=booked.id,
            data=UpdateAppointmentStatusRequest(status='APPROVED'),
            current_user=patient,
            db=db,
            clock=clock,
            notifier=notifier,
        )


def test_doctor_listing_paginates_and_filters(
    db, doctor, patient, monday_morning, clock, notifier, skip_schema_checks
) -> None:
    for start in (at(5, 9, 0), at(5, 9, 30), at(5, 10, 0)):
        _book(db, doctor, patient, clock, notifier, start)

    page = list_doctor_appointments(
        status_filter=AppointmentStatus.PENDING,
        page=1,
        limit=2,
        current_user=doctor,
        db=db,
    )
    empty = list_doctor_appointments(
        status_filter=AppointmentStatus.CONFIRMED,
        page=1,
        limit=2,
        current_user=doctor,
        db=db,
    )

    assert [item.appointment_start for item in page.appointments] == [at(5, 9, 0), at(5, 9, 30)]
    assert (page.pagination.total, page.pagination.total_pages) == (3, 2)
    assert (empty.pagination.total, empty.appointments) == (0, [])
