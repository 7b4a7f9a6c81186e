from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_doctor, require_patient
from backend.core.clock import Clock, get_clock
from backend.database import get_db
from backend.models.appointment import AppointmentStatus
from backend.models.user import User
from backend.routes.common import (
    AppointmentListResponse,
    AppointmentResponse,
    build_page,
    database_unavailable,
    ensure_database_ready,
)
from backend.services import appointments
from backend.services.booking import book_appointment
from backend.services.notifications import Notifier, get_notifier

router = APIRouter(tags=['appointments'])


class CreateAppointmentRequest(BaseModel):
    doctor_id: int
    appointment_start: datetime

    @field_validator('appointment_start')
    @classmethod
    def validate_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError('Appointment start must include a timezone offset.')
        return value


class UpdateAppointmentStatusRequest(BaseModel):
    status: Literal['APPROVED', 'REJECTED']

    @field_validator('status', mode='before')
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().upper() if isinstance(value, str) else value


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(require_patient),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()

    try:
        return book_appointment(
            db,
            doctor_id=data.doctor_id,
            patient_id=current_user.id,
            desired_start=data.appointment_start,
            now=clock.now(),
            notifier=notifier,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.get('/patient', response_model=AppointmentListResponse)
def list_my_appointments(
    type: Literal['upcoming', 'past'] | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(require_patient),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    ensure_database_ready()

    try:
        items, total = appointments.list_patient_appointments(db, current_user.id, type, page, limit, clock.now())
        return build_page(items, total, page, limit)
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.get('/doctor', response_model=AppointmentListResponse)
def list_doctor_appointments(
    status_filter: AppointmentStatus | None = Query(default=None, alias='status'),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(require_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        items, total = appointments.list_doctor_appointments(db, current_user.id, status_filter, page, limit)
        return build_page(items, total, page, limit)
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.patch('/{appointment_id}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: UpdateAppointmentStatusRequest,
    current_user: User = Depends(require_doctor),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()

    try:
        if data.status == AppointmentStatus.APPROVED.value:
            return appointments.approve_appointment(db, appointment_id, current_user.id, clock.now(), notifier)
        return appointments.reject_appointment(db, appointment_id, current_user.id, clock.now(), notifier)
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc
