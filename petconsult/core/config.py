import os

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

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./petconsult.db")
CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:3000"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Reservation holds
HOLD_TIMEOUT_MINUTES = int(os.getenv("HOLD_TIMEOUT_MINUTES", "15"))
HOLD_REAPER_INTERVAL_SECONDS = float(os.getenv("HOLD_REAPER_INTERVAL_SECONDS", "30"))
HOLD_REAPER_ENABLED = _get_bool(os.getenv("HOLD_REAPER_ENABLED"), default=True)

# Slot projection
SLOT_HORIZON_DAYS = int(os.getenv("SLOT_HORIZON_DAYS", "14"))
SLOT_HORIZON_MAX_DAYS = int(os.getenv("SLOT_HORIZON_MAX_DAYS", "28"))

# Consultation lifecycle
START_GRACE_MINUTES = int(os.getenv("START_GRACE_MINUTES", "10"))
NO_SHOW_GRACE_MINUTES = int(os.getenv("NO_SHOW_GRACE_MINUTES", "15"))
LATE_CANCELLATION_POLICY = os.getenv("LATE_CANCELLATION_POLICY", "deny").strip().lower()

# Payment collaborator
PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "mock").strip().lower()
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")

# Transport collaborator
TRANSPORT_PROVIDER = os.getenv("TRANSPORT_PROVIDER", "noop").strip().lower()
REDIS_URL = os.getenv("REDIS_URL", "")
REDIS_STREAM_PREFIX = os.getenv("REDIS_STREAM_PREFIX", "consultation")
REDIS_STREAM_MAXLEN = int(os.getenv("REDIS_STREAM_MAXLEN", "10000"))

LATE_CANCELLATION_POLICIES = {"deny", "partial_refund"}
PAYMENT_PROVIDERS = {"mock", "stripe"}
TRANSPORT_PROVIDERS = {"noop", "redis"}


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if LATE_CANCELLATION_POLICY not in LATE_CANCELLATION_POLICIES:
        raise RuntimeError(f"LATE_CANCELLATION_POLICY must be one of {sorted(LATE_CANCELLATION_POLICIES)}.")
    if PAYMENT_PROVIDER not in PAYMENT_PROVIDERS:
        raise RuntimeError(f"PAYMENT_PROVIDER must be one of {sorted(PAYMENT_PROVIDERS)}.")
    if PAYMENT_PROVIDER == "stripe" and not (STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET):
        raise RuntimeError("STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET must be set for the stripe provider.")
    if TRANSPORT_PROVIDER not in TRANSPORT_PROVIDERS:
        raise RuntimeError(f"TRANSPORT_PROVIDER must be one of {sorted(TRANSPORT_PROVIDERS)}.")
    if TRANSPORT_PROVIDER == "redis" and not REDIS_URL:
        raise RuntimeError("REDIS_URL must be set for the redis transport.")
