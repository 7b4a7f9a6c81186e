import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./medibook.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:3000"])
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
PAYMENT_SUCCESS_PATH = os.getenv("PAYMENT_SUCCESS_PATH", "/payment/success")
PAYMENT_CANCEL_PATH = os.getenv("PAYMENT_CANCEL_PATH", "/payment/cancel")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "inr")

CRON_SECRET = os.getenv("CRON_SECRET", "")

# Availability times and calendar dates are read in this fixed offset (IST by default).
CLINIC_UTC_OFFSET_MINUTES = int(os.getenv("CLINIC_UTC_OFFSET_MINUTES", "330"))

SLOT_DURATION_MINUTES = 30
MIN_LEAD_TIME = timedelta(hours=24)
PAYMENT_INITIATION_WINDOW = timedelta(minutes=20)
CHECKOUT_COMPLETION_WINDOW = timedelta(minutes=30)
STALE_PENDING_AFTER = timedelta(hours=24)
REMINDER_LEAD = timedelta(minutes=60)


def validate_runtime_config() -> None:
    if APP_ENV.lower() != "production":
        return
    if JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if not STRIPE_WEBHOOK_SECRET:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET must be set in production.")
    if not CRON_SECRET:
        raise RuntimeError("CRON_SECRET must be set in production.")
