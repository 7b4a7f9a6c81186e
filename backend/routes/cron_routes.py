import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, status

from backend.core import config
from backend.core.clock import Clock, get_clock
from backend.database import SessionLocal
from backend.routes.common import ensure_database_ready
from backend.services.notifications import Notifier, get_notifier
from backend.services.reconciliation import run_reconciliation_sweep

router = APIRouter(tags=['cron'])


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    if not config.CRON_SECRET:
        return
    expected = f'Bearer {config.CRON_SECRET}'
    if authorization is None or not hmac.compare_digest(authorization, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Unauthorized',
        )


@router.get('/reconcile', dependencies=[Depends(verify_cron_secret)])
def run_reconciliation(
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    ensure_database_ready()

    result = run_reconciliation_sweep(SessionLocal, clock, notifier)
    return {'success': True, 'data': result.as_dict()}
