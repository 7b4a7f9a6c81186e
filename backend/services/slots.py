from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from backend.core import config
from backend.core.clock import clinic_clock_label, clinic_day_bounds, clinic_day_of_week, clinic_instant
from backend.models.appointment import ACTIVE_STATUSES, Appointment
from backend.models.availability import WeeklyAvailability

REASON_PAST = 'past'
REASON_LEAD_TIME = 'lead_time'
REASON_BOOKED = 'booked'


@dataclass(frozen=True)
class Slot:
    time: str
    start_time: datetime
    end_time: datetime
    is_available: bool
    reason: str | None = None


def slot_length() -> timedelta:
    return timedelta(minutes=config.SLOT_DURATION_MINUTES)


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


def iterate_slot_starts(window_start: datetime, window_end: datetime) -> list[datetime]:
    """Slot starts inside a window; a trailing partial slot is dropped."""
    starts: list[datetime] = []
    length = slot_length()
    current = window_start

    while current + length <= window_end:
        starts.append(current)
        current += length

    return starts


def classify_slot(
    start: datetime,
    end: datetime,
    booked_intervals: Sequence[tuple[datetime, datetime]],
    now: datetime,
) -> str | None:
    if start < now:
        return REASON_PAST
    if start < now + config.MIN_LEAD_TIME:
        return REASON_LEAD_TIME
    if any(overlaps(start, end, booked_start, booked_end) for booked_start, booked_end in booked_intervals):
        return REASON_BOOKED
    return None


def generate_slots(
    slot_date: date,
    windows: Iterable[WeeklyAvailability],
    appointments: Iterable[Appointment],
    now: datetime,
) -> list[Slot]:
    day_of_week = clinic_day_of_week(slot_date)
    active_windows = [
        window for window in windows
        if window.is_active and window.day_of_week == day_of_week
    ]
    if not active_windows:
        return []

    booked_intervals = [
        (appointment.appointment_start, appointment.appointment_end)
        for appointment in appointments
        if appointment.status in ACTIVE_STATUSES
    ]

    slots_by_start: dict[datetime, Slot] = {}
    for window in active_windows:
        window_start = clinic_instant(slot_date, window.start_time)
        window_end = clinic_instant(slot_date, window.end_time)

        for start in iterate_slot_starts(window_start, window_end):
            end = start + slot_length()
            reason = classify_slot(start, end, booked_intervals, now)
            slot = Slot(
                time=clinic_clock_label(start),
                start_time=start,
                end_time=end,
                is_available=reason is None,
                reason=reason,
            )
            existing = slots_by_start.get(start)
            if existing is None or (slot.is_available and not existing.is_available):
                slots_by_start[start] = slot

    return [slots_by_start[start] for start in sorted(slots_by_start)]


def get_day_windows(db: Session, doctor_id: int, slot_date: date) -> list[WeeklyAvailability]:
    return db.query(WeeklyAvailability).filter(
        WeeklyAvailability.doctor_id == doctor_id,
        WeeklyAvailability.day_of_week == clinic_day_of_week(slot_date),
        WeeklyAvailability.is_active.is_(True),
    ).all()


def get_day_appointments(db: Session, doctor_id: int, slot_date: date) -> list[Appointment]:
    day_start, day_end = clinic_day_bounds(slot_date)
    # Widened by one slot so an appointment that starts just before midnight still blocks.
    return db.query(Appointment).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.appointment_start >= day_start - slot_length(),
        Appointment.appointment_start < day_end,
    ).all()


def load_slots(db: Session, doctor_id: int, slot_date: date, now: datetime) -> list[Slot]:
    windows = get_day_windows(db, doctor_id, slot_date)
    if not windows:
        return []
    return generate_slots(slot_date, windows, get_day_appointments(db, doctor_id, slot_date), now)
