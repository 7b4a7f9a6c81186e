import logging

from backend.core.clock import clinic_clock_label, clinic_date
from backend.models.appointment import Appointment

logger = logging.getLogger(__name__)

BOOKING_REQUESTED = 'booking_requested'
APPOINTMENT_APPROVED = 'appointment_approved'
APPOINTMENT_REJECTED = 'appointment_rejected'
PAYMENT_WINDOW_EXPIRED = 'payment_window_expired'
PAYMENT_SUCCEEDED = 'payment_succeeded'
APPOINTMENT_REMINDER = 'appointment_reminder'


class Notifier:
    def send(self, kind: str, appointment: Appointment, recipient_id: int) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def send(self, kind: str, appointment: Appointment, recipient_id: int) -> None:
        logger.info(
            'Notification %s for appointment %s to user %s (%s %s)',
            kind,
            appointment.id,
            recipient_id,
            clinic_date(appointment.appointment_start).isoformat(),
            clinic_clock_label(appointment.appointment_start),
        )


_default_notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return _default_notifier


def notify(notifier: Notifier, kind: str, appointment: Appointment, recipient_id: int) -> bool:
    """Deliver without raising. A failed delivery never undoes the triggering transition."""
    try:
        notifier.send(kind, appointment, recipient_id)
    except Exception:
        logger.exception('Notification %s failed for appointment %s', kind, appointment.id)
        return False
    return True
