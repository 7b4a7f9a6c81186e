import json
import logging
from dataclasses import dataclass
from datetime import datetime

import stripe
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import (
    AlreadyPaid,
    AppointmentNotFound,
    DependencyUnavailable,
    NotApprovable,
    ProviderSignatureInvalid,
    WindowExpired,
)
from backend.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from backend.models.user import User
from backend.services import appointments
from backend.services.notifications import Notifier

logger = logging.getLogger(__name__)

SESSION_COMPLETED = 'checkout.session.completed'
SESSION_EXPIRED = 'checkout.session.expired'
SESSION_ASYNC_PAYMENT_FAILED = 'checkout.session.async_payment_failed'


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None
    expires_at: datetime


@dataclass(frozen=True)
class PaymentEvent:
    type: str
    session_id: str | None
    appointment_id: int | None


class StripePaymentGateway:
    """Thin wrapper over the Stripe SDK calls the engine needs."""

    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None):
        self.secret_key = secret_key if secret_key is not None else config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        if not self.secret_key:
            logger.warning('STRIPE_SECRET_KEY is not set; checkout sessions cannot be created.')

    def create_session(
        self,
        *,
        appointment_id: int,
        amount: int,
        customer_email: str | None,
        description: str,
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
    ) -> CheckoutSession:
        if not self.secret_key:
            raise DependencyUnavailable('Payments are not configured.')
        if not amount or amount <= 0:
            raise DependencyUnavailable(f'Invalid consultation fee: {amount}.')

        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                payment_method_types=['card'],
                line_items=[
                    {
                        'price_data': {
                            'currency': config.STRIPE_CURRENCY,
                            'product_data': {
                                'name': description,
                                'description': f'Appointment ID: {appointment_id}',
                            },
                            'unit_amount': int(round(amount * 100)),
                        },
                        'quantity': 1,
                    }
                ],
                mode='payment',
                customer_email=customer_email,
                client_reference_id=str(appointment_id),
                success_url=success_url,
                cancel_url=cancel_url,
                expires_at=int(expires_at.timestamp()),
                metadata={'appointment_id': str(appointment_id)},
            )
        except stripe.StripeError as exc:
            logger.error('Stripe session creation failed for appointment %s: %s', appointment_id, exc)
            raise DependencyUnavailable('Payment provider is unavailable.') from exc

        return CheckoutSession(session_id=session.id, url=session.url, expires_at=expires_at)

    def expire_session(self, session_id: str) -> None:
        try:
            stripe.checkout.Session.expire(session_id, api_key=self.secret_key)
        except stripe.StripeError:
            logger.exception('Could not expire orphaned checkout session %s', session_id)

    def parse_event(self, payload: bytes, signature: str | None) -> PaymentEvent:
        if not signature or not self.webhook_secret:
            logger.warning('Webhook rejected: missing signature or webhook secret')
            raise ProviderSignatureInvalid('Missing signature or webhook secret.')

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning('Stripe webhook signature verification failed: %s', exc)
            raise ProviderSignatureInvalid() from exc
        except ValueError as exc:
            logger.warning('Stripe webhook payload could not be parsed: %s', exc)
            raise ProviderSignatureInvalid('Invalid webhook payload.') from exc

        return event_from_payload(json.loads(payload))


def event_from_payload(body: dict) -> PaymentEvent:
    session = body.get('data', {}).get('object', {}) or {}
    metadata = session.get('metadata') or {}
    reference = metadata.get('appointment_id') or session.get('client_reference_id')

    appointment_id = None
    if reference is not None:
        try:
            appointment_id = int(reference)
        except (TypeError, ValueError):
            logger.warning('Webhook %s carries a malformed appointment reference %r', body.get('id'), reference)

    return PaymentEvent(type=body.get('type', ''), session_id=session.get('id'), appointment_id=appointment_id)


def get_payment_gateway() -> StripePaymentGateway:
    return StripePaymentGateway()


def _payment_urls(appointment_id: int) -> tuple[str, str]:
    base = config.FRONTEND_URL.rstrip('/')
    return (
        f'{base}{config.PAYMENT_SUCCESS_PATH}?id={appointment_id}',
        f'{base}{config.PAYMENT_CANCEL_PATH}?id={appointment_id}',
    )


def check_payable(appointment: Appointment, now: datetime) -> None:
    if appointment.payment_status == PaymentStatus.COMPLETED.value:
        raise AlreadyPaid()
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise WindowExpired()
    if appointment.status != AppointmentStatus.APPROVED.value:
        raise NotApprovable()
    if appointment.payment_expiry_time is None or now > appointment.payment_expiry_time:
        raise WindowExpired()
    if now >= appointment.appointment_start:
        raise WindowExpired('The appointment time has already passed.')


def initiate_payment(
    db: Session,
    appointment_id: int,
    patient_id: int,
    gateway: StripePaymentGateway,
    now: datetime,
) -> CheckoutSession:
    appointment = appointments.get_owned_appointment(db, appointment_id, patient_id=patient_id)
    check_payable(appointment, now)
    previous_session_id = (
        appointment.stripe_session_id
        if appointment.payment_status == PaymentStatus.PENDING.value
        else None
    )

    doctor = db.get(User, appointment.doctor_id)
    patient = db.get(User, appointment.patient_id)
    success_url, cancel_url = _payment_urls(appointment.id)
    expires_at = now + config.CHECKOUT_COMPLETION_WINDOW

    session = gateway.create_session(
        appointment_id=appointment.id,
        amount=doctor.consultation_fee if doctor else 0,
        customer_email=patient.email if patient else None,
        description=f'Consultation with Dr. {doctor.full_name}' if doctor else 'Consultation',
        success_url=success_url,
        cancel_url=cancel_url,
        expires_at=expires_at,
    )

    started = appointments.apply_transition(
        db,
        appointment.id,
        (AppointmentStatus.APPROVED,),
        {
            'payment_status': PaymentStatus.PENDING.value,
            'stripe_session_id': session.session_id,
            'checkout_expiry_time': expires_at,
        },
        now,
        criteria=(
            Appointment.payment_status != PaymentStatus.COMPLETED.value,
            Appointment.payment_expiry_time >= now,
        ),
    )
    if not started:
        # The sweep or a webhook changed the row while the session was being created.
        gateway.expire_session(session.session_id)
        check_payable(appointments.get_appointment(db, appointment.id), now)
        raise WindowExpired()

    if previous_session_id and previous_session_id != session.session_id:
        gateway.expire_session(previous_session_id)
        logger.info('Checkout session %s replaced for appointment %s', previous_session_id, appointment.id)

    logger.info('Checkout session %s opened for appointment %s', session.session_id, appointment.id)
    return session


def handle_payment_event(
    db: Session,
    event: PaymentEvent,
    now: datetime,
    notifier: Notifier | None = None,
) -> bool:
    """Apply a provider event. Returns True when it changed an appointment."""
    if event.appointment_id is None:
        logger.info('Ignoring %s event without an appointment reference', event.type)
        return False

    try:
        if event.type == SESSION_COMPLETED:
            _, changed = appointments.confirm_payment(db, event.appointment_id, event.session_id, now, notifier)
            return changed

        if event.type in (SESSION_EXPIRED, SESSION_ASYNC_PAYMENT_FAILED):
            if not event.session_id:
                return False
            _, changed = appointments.fail_payment(db, event.appointment_id, event.session_id, now)
            return changed
    except AppointmentNotFound:
        # Acknowledged so Stripe stops redelivering.
        logger.warning('%s event for unknown appointment %s (session %s)', event.type, event.appointment_id, event.session_id)
        return False

    logger.debug('Unhandled Stripe event type %s', event.type)
    return False
