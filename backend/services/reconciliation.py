import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.clock import Clock
from backend.core.errors import AppointmentError
from backend.services import appointments, notifications
from backend.services.notifications import Notifier

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_payment_windows: int = 0
    stale_pending_rejected: int = 0
    reminders_sent: int = 0
    auto_completed: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _sweep(
    session_factory: Callable[[], Session],
    label: str,
    find_ids: Callable[[Session, datetime], list[int]],
    apply: Callable[[Session, int, datetime], bool],
    now: datetime,
    result: SweepResult,
    on_applied: Callable[[Session, int], None] | None = None,
) -> int:
    db = session_factory()
    try:
        candidate_ids = find_ids(db, now)
    except SQLAlchemyError:
        logger.exception('[Sweep] Could not load candidates for %s', label)
        result.failed += 1
        return 0
    finally:
        db.close()

    applied = 0
    for appointment_id in candidate_ids:
        db = session_factory()
        try:
            if apply(db, appointment_id, now):
                applied += 1
                if on_applied is not None:
                    on_applied(db, appointment_id)
        except SQLAlchemyError:
            db.rollback()
            result.failed += 1
            logger.exception('[Sweep] %s failed for appointment %s; will retry next run', label, appointment_id)
        except AppointmentError as exc:
            db.rollback()
            result.failed += 1
            logger.warning('[Sweep] %s skipped appointment %s: %s', label, appointment_id, exc.message)
        finally:
            db.close()

    if candidate_ids:
        logger.info('[Sweep] %s: %d of %d candidates updated', label, applied, len(candidate_ids))
    return applied


def _notify_patient(notifier: Notifier, kind: str) -> Callable[[Session, int], None]:
    def send(db: Session, appointment_id: int) -> None:
        appointment = appointments.get_appointment(db, appointment_id)
        notifications.notify(notifier, kind, appointment, appointment.patient_id)

    return send


def run_reconciliation_sweep(
    session_factory: Callable[[], Session],
    clock: Clock,
    notifier: Notifier,
) -> SweepResult:
    now = clock.now()
    result = SweepResult()
    logger.info('[Sweep] Starting reconciliation at %s', now.isoformat())

    result.expired_payment_windows = _sweep(
        session_factory,
        'payment window expiry',
        appointments.find_expired_approval_ids,
        appointments.expire_approval_window,
        now,
        result,
        _notify_patient(notifier, notifications.PAYMENT_WINDOW_EXPIRED),
    )
    result.stale_pending_rejected = _sweep(
        session_factory,
        'stale pending rejection',
        appointments.find_stale_pending_ids,
        appointments.expire_stale_pending,
        now,
        result,
        _notify_patient(notifier, notifications.APPOINTMENT_REJECTED),
    )
    result.reminders_sent = _sweep(
        session_factory,
        'appointment reminders',
        appointments.find_reminder_due_ids,
        appointments.mark_reminder_sent,
        now,
        result,
        _notify_patient(notifier, notifications.APPOINTMENT_REMINDER),
    )
    result.auto_completed = _sweep(
        session_factory,
        'auto-complete',
        appointments.find_completable_ids,
        appointments.auto_complete,
        now,
        result,
    )

    logger.info('[Sweep] Finished: %s', result.as_dict())
    return result
