from datetime import date, datetime, time, timedelta, timezone

from backend.core import config

CLINIC_TZ = timezone(timedelta(minutes=config.CLINIC_UTC_OFFSET_MINUTES))


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a single instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime):
        self._instant = ensure_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def advance(self, delta: timedelta) -> datetime:
        self._instant += delta
        return self._instant


_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_clock_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def clinic_day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def clinic_instant(day: date, clock_time: time | str) -> datetime:
    if isinstance(clock_time, str):
        clock_time = parse_clock_time(clock_time)
    return datetime.combine(day, clock_time, tzinfo=CLINIC_TZ).astimezone(timezone.utc)


def clinic_day_bounds(day: date) -> tuple[datetime, datetime]:
    start = clinic_instant(day, time(0, 0))
    return start, start + timedelta(days=1)


def clinic_date(instant: datetime) -> date:
    return ensure_utc(instant).astimezone(CLINIC_TZ).date()


def clinic_clock_label(instant: datetime) -> str:
    return ensure_utc(instant).astimezone(CLINIC_TZ).strftime("%H:%M")
