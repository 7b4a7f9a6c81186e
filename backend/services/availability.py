import logging
from typing import Iterable

from sqlalchemy.orm import Session

from backend.core.clock import parse_clock_time
from backend.models.availability import WeeklyAvailability

logger = logging.getLogger(__name__)


def get_weekly_availability(db: Session, doctor_id: int) -> list[WeeklyAvailability]:
    return db.query(WeeklyAvailability).filter(
        WeeklyAvailability.doctor_id == doctor_id,
    ).order_by(WeeklyAvailability.day_of_week.asc(), WeeklyAvailability.start_time.asc()).all()


def replace_weekly_availability(db: Session, doctor_id: int, entries: Iterable) -> list[WeeklyAvailability]:
    """Swap the doctor's whole weekly schedule in a single transaction."""
    rows = []
    for entry in entries:
        if entry.is_active and parse_clock_time(entry.start_time) >= parse_clock_time(entry.end_time):
            raise ValueError(f'Start time must be before end time on day {entry.day_of_week}.')
        rows.append(
            WeeklyAvailability(
                doctor_id=doctor_id,
                day_of_week=entry.day_of_week,
                start_time=entry.start_time,
                end_time=entry.end_time,
                is_active=entry.is_active,
            )
        )

    try:
        db.query(WeeklyAvailability).filter(
            WeeklyAvailability.doctor_id == doctor_id,
        ).delete(synchronize_session=False)
        db.add_all(rows)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info('Replaced weekly availability for doctor %s with %d entries', doctor_id, len(rows))
    return get_weekly_availability(db, doctor_id)
