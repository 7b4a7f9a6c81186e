import logging
from datetime import datetime

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from backend.database import ensure_appointment_schema, ensure_availability_schema

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    appointment_start: datetime
    appointment_end: datetime
    duration_minutes: int
    status: str
    payment_status: str
    payment_expiry_time: datetime | None = None
    checkout_expiry_time: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaginationResponse(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class AppointmentListResponse(BaseModel):
    appointments: list[AppointmentResponse]
    pagination: PaginationResponse


def build_page(items, total: int, page: int, limit: int) -> AppointmentListResponse:
    return AppointmentListResponse(
        appointments=[AppointmentResponse.model_validate(item) for item in items],
        pagination=PaginationResponse(
            total=total,
            page=page,
            limit=limit,
            total_pages=(total + limit - 1) // limit,
        ),
    )


def database_unavailable(exc: SQLAlchemyError) -> HTTPException:
    logger.error('Database request failed: %s', exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc
