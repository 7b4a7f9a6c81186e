import logging
from datetime import datetime

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import AppointmentNotFound, InvalidTransition
from backend.models.appointment import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    PaymentStatus,
)
from backend.services import notifications
from backend.services.notifications import Notifier

logger = logging.getLogger(__name__)

Status = AppointmentStatus

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    Status.PENDING: frozenset({Status.APPROVED, Status.REJECTED}),
    Status.APPROVED: frozenset({Status.CONFIRMED, Status.CANCELLED}),
    Status.CONFIRMED: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.COMPLETED: frozenset(),
    Status.REJECTED: frozenset(),
    Status.CANCELLED: frozenset(),
}

LEGAL_PAYMENT_STATES: dict[AppointmentStatus, frozenset[PaymentStatus]] = {
    Status.PENDING: frozenset({PaymentStatus.NOT_INITIATED}),
    Status.APPROVED: frozenset({PaymentStatus.NOT_INITIATED, PaymentStatus.PENDING, PaymentStatus.FAILED}),
    Status.CONFIRMED: frozenset({PaymentStatus.COMPLETED}),
    Status.COMPLETED: frozenset({PaymentStatus.COMPLETED}),
    Status.REJECTED: frozenset({PaymentStatus.NOT_INITIATED}),
    Status.CANCELLED: frozenset({PaymentStatus.NOT_INITIATED, PaymentStatus.FAILED}),
}

UNPAID_PAYMENT_STATUSES = (
    PaymentStatus.NOT_INITIATED.value,
    PaymentStatus.PENDING.value,
    PaymentStatus.FAILED.value,
)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[current]


def is_consistent(status: AppointmentStatus, payment_status: PaymentStatus) -> bool:
    return payment_status in LEGAL_PAYMENT_STATES[status]


def _check_move(from_statuses: tuple[AppointmentStatus, ...], values: dict) -> None:
    target = values.get('status')
    payment = values.get('payment_status')
    for current in from_statuses:
        resulting = Status(target) if target else current
        if target and not can_transition(current, resulting):
            raise InvalidTransition(f'Cannot move an appointment from {current.value} to {resulting.value}.')
        if payment and not is_consistent(resulting, PaymentStatus(payment)):
            raise InvalidTransition(f'Payment status {payment} is not valid for a {resulting.value} appointment.')


def apply_transition(
    db: Session,
    appointment_id: int,
    from_statuses: tuple[AppointmentStatus, ...],
    values: dict,
    now: datetime,
    criteria: tuple = (),
) -> bool:
    """Run one guarded update and commit it. Returns False when the guard did not match."""
    _check_move(from_statuses, values)

    statement = (
        update(Appointment)
        .where(
            Appointment.id == appointment_id,
            Appointment.status.in_([status.value for status in from_statuses]),
            *criteria,
        )
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(statement)
        if result.rowcount != 1:
            db.rollback()
            return False
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info('Appointment %s updated: %s', appointment_id, values)
    return True


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None:
        raise AppointmentNotFound()
    return appointment


def get_owned_appointment(
    db: Session,
    appointment_id: int,
    *,
    doctor_id: int | None = None,
    patient_id: int | None = None,
) -> Appointment:
    appointment = get_appointment(db, appointment_id)
    if doctor_id is not None and appointment.doctor_id != doctor_id:
        raise AppointmentNotFound()
    if patient_id is not None and appointment.patient_id != patient_id:
        raise AppointmentNotFound()
    return appointment


def create_appointment(
    db: Session,
    doctor_id: int,
    patient_id: int,
    appointment_start: datetime,
    now: datetime,
) -> Appointment:
    """Stage a new PENDING appointment; the caller owns the transaction."""
    appointment = Appointment(
        doctor_id=doctor_id,
        patient_id=patient_id,
        appointment_start=appointment_start,
        duration_minutes=config.SLOT_DURATION_MINUTES,
        status=Status.PENDING.value,
        payment_status=PaymentStatus.NOT_INITIATED.value,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    db.flush()
    return appointment


def approve_appointment(
    db: Session,
    appointment_id: int,
    doctor_id: int,
    now: datetime,
    notifier: Notifier | None = None,
) -> Appointment:
    get_owned_appointment(db, appointment_id, doctor_id=doctor_id)

    approved = apply_transition(
        db,
        appointment_id,
        (Status.PENDING,),
        {
            'status': Status.APPROVED.value,
            'payment_expiry_time': now + config.PAYMENT_INITIATION_WINDOW,
        },
        now,
    )
    appointment = get_appointment(db, appointment_id)
    if not approved:
        raise InvalidTransition(f'Only pending appointments can be approved (currently {appointment.status}).')

    if notifier is not None:
        notifications.notify(notifier, notifications.APPOINTMENT_APPROVED, appointment, appointment.patient_id)
    return appointment


def reject_appointment(
    db: Session,
    appointment_id: int,
    doctor_id: int,
    now: datetime,
    notifier: Notifier | None = None,
) -> Appointment:
    get_owned_appointment(db, appointment_id, doctor_id=doctor_id)

    rejected = apply_transition(
        db,
        appointment_id,
        (Status.PENDING,),
        {'status': Status.REJECTED.value},
        now,
    )
    appointment = get_appointment(db, appointment_id)
    if not rejected:
        raise InvalidTransition(f'Only pending appointments can be rejected (currently {appointment.status}).')

    if notifier is not None:
        notifications.notify(notifier, notifications.APPOINTMENT_REJECTED, appointment, appointment.patient_id)
    return appointment


def confirm_payment(
    db: Session,
    appointment_id: int,
    session_id: str | None,
    now: datetime,
    notifier: Notifier | None = None,
) -> tuple[Appointment, bool]:
    """Mark an approved appointment paid. Safe to call again for the same payment."""
    get_appointment(db, appointment_id)

    values = {
        'status': Status.CONFIRMED.value,
        'payment_status': PaymentStatus.COMPLETED.value,
    }
    if session_id:
        values['stripe_session_id'] = session_id

    confirmed = apply_transition(db, appointment_id, (Status.APPROVED,), values, now)
    appointment = get_appointment(db, appointment_id)

    if not confirmed:
        if appointment.payment_status == PaymentStatus.COMPLETED.value and (
            not session_id or session_id == appointment.stripe_session_id
        ):
            logger.info('Duplicate payment confirmation for appointment %s ignored', appointment_id)
        elif appointment.payment_status == PaymentStatus.COMPLETED.value:
            logger.warning(
                'Second payment session %s completed for appointment %s already paid through %s; refund required',
                session_id,
                appointment_id,
                appointment.stripe_session_id,
            )
        else:
            logger.warning(
                'Payment session %s completed for appointment %s in status %s; refund required',
                session_id,
                appointment_id,
                appointment.status,
            )
        return appointment, False

    if notifier is not None:
        notifications.notify(notifier, notifications.PAYMENT_SUCCEEDED, appointment, appointment.patient_id)
        notifications.notify(notifier, notifications.PAYMENT_SUCCEEDED, appointment, appointment.doctor_id)
    return appointment, True


def fail_payment(db: Session, appointment_id: int, session_id: str, now: datetime) -> tuple[Appointment, bool]:
    """Record a failed or expired checkout. The appointment stays APPROVED."""
    get_appointment(db, appointment_id)

    failed = apply_transition(
        db,
        appointment_id,
        (Status.APPROVED,),
        {'payment_status': PaymentStatus.FAILED.value},
        now,
        criteria=(
            Appointment.payment_status == PaymentStatus.PENDING.value,
            Appointment.stripe_session_id == session_id,
        ),
    )
    appointment = get_appointment(db, appointment_id)
    if not failed:
        logger.info('Ignoring failure of session %s for appointment %s (%s/%s)',
                    session_id, appointment_id, appointment.status, appointment.payment_status)
    return appointment, failed


def _expired_approval_criteria(now: datetime) -> tuple:
    # An open checkout keeps the hold until Stripe expires it.
    checkout_closed = or_(
        Appointment.payment_status != PaymentStatus.PENDING.value,
        Appointment.checkout_expiry_time.is_(None),
        Appointment.checkout_expiry_time < now,
    )
    return (
        Appointment.payment_status.in_(UNPAID_PAYMENT_STATUSES),
        or_(
            and_(Appointment.payment_expiry_time < now, checkout_closed),
            Appointment.appointment_start <= now,
        ),
    )


def _stale_pending_criteria(now: datetime) -> tuple:
    return (Appointment.created_at < now - config.STALE_PENDING_AFTER,)


def _reminder_due_criteria(now: datetime) -> tuple:
    return (
        Appointment.reminder_sent_at.is_(None),
        Appointment.appointment_start > now,
        Appointment.appointment_start <= now + config.REMINDER_LEAD,
    )


def expire_approval_window(db: Session, appointment_id: int, now: datetime) -> bool:
    return apply_transition(
        db,
        appointment_id,
        (Status.APPROVED,),
        {
            'status': Status.CANCELLED.value,
            'payment_status': PaymentStatus.FAILED.value,
        },
        now,
        criteria=_expired_approval_criteria(now),
    )


def expire_stale_pending(db: Session, appointment_id: int, now: datetime) -> bool:
    return apply_transition(
        db,
        appointment_id,
        (Status.PENDING,),
        {'status': Status.REJECTED.value},
        now,
        criteria=_stale_pending_criteria(now),
    )


def auto_complete(db: Session, appointment_id: int, now: datetime) -> bool:
    appointment = get_appointment(db, appointment_id)
    if not appointment.appointment_end < now:
        return False
    return apply_transition(
        db,
        appointment_id,
        (Status.CONFIRMED,),
        {'status': Status.COMPLETED.value},
        now,
    )


def mark_reminder_sent(db: Session, appointment_id: int, now: datetime) -> bool:
    return apply_transition(
        db,
        appointment_id,
        (Status.CONFIRMED,),
        {'reminder_sent_at': now},
        now,
        criteria=_reminder_due_criteria(now),
    )


def _ids(query) -> list[int]:
    return [row[0] for row in query.order_by(Appointment.id.asc()).all()]


def find_expired_approval_ids(db: Session, now: datetime) -> list[int]:
    return _ids(db.query(Appointment.id).filter(
        Appointment.status == Status.APPROVED.value,
        *_expired_approval_criteria(now),
    ))


def find_stale_pending_ids(db: Session, now: datetime) -> list[int]:
    return _ids(db.query(Appointment.id).filter(
        Appointment.status == Status.PENDING.value,
        *_stale_pending_criteria(now),
    ))


def find_reminder_due_ids(db: Session, now: datetime) -> list[int]:
    return _ids(db.query(Appointment.id).filter(
        Appointment.status == Status.CONFIRMED.value,
        *_reminder_due_criteria(now),
    ))


def find_completable_ids(db: Session, now: datetime) -> list[int]:
    started = db.query(Appointment).filter(
        Appointment.status == Status.CONFIRMED.value,
        Appointment.appointment_start < now,
    ).order_by(Appointment.id.asc()).all()
    return [appointment.id for appointment in started if appointment.appointment_end < now]


def _paginate(query, page: int, limit: int) -> tuple[list[Appointment], int]:
    total = query.order_by(None).with_entities(func.count(Appointment.id)).scalar() or 0
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, total


def list_patient_appointments(
    db: Session,
    patient_id: int,
    kind: str | None,
    page: int,
    limit: int,
    now: datetime,
) -> tuple[list[Appointment], int]:
    query = db.query(Appointment).filter(Appointment.patient_id == patient_id)

    if kind == 'upcoming':
        query = query.filter(
            Appointment.appointment_start >= now,
            Appointment.status.in_(ACTIVE_STATUSES),
        ).order_by(Appointment.appointment_start.asc())
    elif kind == 'past':
        query = query.filter(
            or_(
                Appointment.appointment_start < now,
                Appointment.status.in_(TERMINAL_STATUSES),
            )
        ).order_by(Appointment.appointment_start.desc())
    else:
        query = query.order_by(Appointment.appointment_start.asc())

    return _paginate(query, page, limit)


def list_doctor_appointments(
    db: Session,
    doctor_id: int,
    status: AppointmentStatus | None,
    page: int,
    limit: int,
) -> tuple[list[Appointment], int]:
    query = db.query(Appointment).filter(Appointment.doctor_id == doctor_id)
    if status is not None:
        query = query.filter(Appointment.status == status.value)
    return _paginate(query.order_by(Appointment.appointment_start.asc()), page, limit)
