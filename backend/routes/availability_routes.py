import re
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_doctor
from backend.core.clock import Clock, get_clock
from backend.database import get_db
from backend.models.user import DOCTOR_ROLE, User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import availability as availability_service
from backend.services.slots import load_slots

router = APIRouter(tags=['availability'])

TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')
MAX_WEEKLY_ENTRIES = 50


class AvailabilityEntry(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_active: bool = True

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_clock_time(cls, value: str) -> str:
        normalized = value.strip()
        if not TIME_PATTERN.match(normalized):
            raise ValueError('Times must use the 24-hour HH:MM format.')
        return normalized

    @model_validator(mode='after')
    def validate_window(self) -> 'AvailabilityEntry':
        if self.is_active and self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')
        return self


class AvailabilityEntryResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: str
    end_time: str
    is_active: bool

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    time: str
    start_time: datetime
    end_time: datetime
    is_available: bool
    reason: str | None = None


class SlotsResponse(BaseModel):
    doctor_id: int
    date: date
    slots: list[SlotResponse]


@router.get('/me', response_model=list[AvailabilityEntryResponse])
def get_own_availability(
    current_user: User = Depends(require_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return availability_service.get_weekly_availability(db, current_user.id)
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.put('', response_model=list[AvailabilityEntryResponse])
def update_availability(
    entries: list[AvailabilityEntry],
    current_user: User = Depends(require_doctor),
    db: Session = Depends(get_db),
):
    if len(entries) > MAX_WEEKLY_ENTRIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'At most {MAX_WEEKLY_ENTRIES} availability entries are allowed.',
        )

    ensure_database_ready()

    try:
        return availability_service.replace_weekly_availability(db, current_user.id, entries)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.get('/doctors/{doctor_id}/slots', response_model=SlotsResponse)
def list_doctor_slots(
    doctor_id: int,
    slot_date: date = Query(..., alias='date'),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    ensure_database_ready()

    try:
        doctor = db.get(User, doctor_id)
        if doctor is None or doctor.role != DOCTOR_ROLE:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Doctor not found.',
            )

        slots = load_slots(db, doctor_id, slot_date, clock.now())
        return SlotsResponse(
            doctor_id=doctor_id,
            date=slot_date,
            slots=[
                SlotResponse(
                    time=slot.time,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    is_available=slot.is_available,
                    reason=slot.reason,
                )
                for slot in slots
            ],
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc
