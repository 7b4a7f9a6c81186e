import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_patient
from backend.core.clock import Clock, get_clock
from backend.database import get_db
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import payments
from backend.services.notifications import Notifier, get_notifier
from backend.services.payments import StripePaymentGateway, get_payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=['payments'])


class CreateCheckoutSessionRequest(BaseModel):
    appointment_id: int


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str | None = None


@router.post('/checkout-session', response_model=CheckoutSessionResponse)
def create_checkout_session(
    data: CreateCheckoutSessionRequest,
    current_user: User = Depends(require_patient),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
):
    ensure_database_ready()

    try:
        session = payments.initiate_payment(db, data.appointment_id, current_user.id, gateway, clock.now())
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc

    return CheckoutSessionResponse(session_id=session.session_id, url=session.url)


@router.post('/webhook')
async def handle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    payload = await request.body()
    # Raises ProviderSignatureInvalid before anything is read or written.
    event = gateway.parse_event(payload, request.headers.get('stripe-signature'))

    try:
        changed = payments.handle_payment_event(db, event, clock.now(), notifier)
    except SQLAlchemyError as exc:
        logger.exception('Stripe event %s for appointment %s could not be applied', event.type, event.appointment_id)
        raise database_unavailable(exc) from exc

    return {'received': True, 'changed': changed}
