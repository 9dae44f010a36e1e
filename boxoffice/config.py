import os
from typing import List, Optional


class ConfigError(RuntimeError):
    pass


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Stores
# ----------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite+aiosqlite:///./boxoffice.db"
)
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "512"))

# ----------------------------
# Checkout
# ----------------------------
HOLD_TTL_SECONDS = int(os.getenv("HOLD_TTL_SECONDS", str(5 * 60)))
CHECKOUT_SESSION_TTL_SECONDS = int(
    os.getenv("CHECKOUT_SESSION_TTL_SECONDS", str(30 * 60))
)
DEFAULT_MAX_TICKETS_PER_PURCHASE = int(
    os.getenv("DEFAULT_MAX_TICKETS_PER_PURCHASE", "10")
)

# ----------------------------
# Payment providers
# ----------------------------
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/webhooks/mockpay"
)
MP_ACCESS_TOKEN = os.environ.get(
    "MP_ACCESS_TOKEN", os.environ.get("MERCADOPAGO_ACCESS_TOKEN", "")
)
MP_WEBHOOK_SECRET = os.environ.get("MP_WEBHOOK_SECRET", "")
MP_API_URL = os.environ.get("MP_API_URL", "https://api.mercadopago.com")
OPENPAY_MERCHANT_ID = os.environ.get("OPENPAY_MERCHANT_ID", "")
OPENPAY_PRIVATE_KEY = os.environ.get("OPENPAY_PRIVATE_KEY", "")
OPENPAY_WEBHOOK_SECRET = os.environ.get("OPENPAY_WEBHOOK_SECRET", "")
OPENPAY_API_URL = os.environ.get(
    "OPENPAY_API_URL", "https://sandbox-api.openpay.mx"
)
DEFAULT_GATEWAY = os.environ.get("DEFAULT_GATEWAY", "mockpay").lower()
API_URL = os.environ.get("API_URL", "http://localhost:8000")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")

# ----------------------------
# Shared caches
# ----------------------------
IDEMPOTENCY_TTL_SECONDS = int(
    os.getenv("IDEMPOTENCY_TTL_SECONDS", str(24 * 3600))
)
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# ----------------------------
# Fulfillment
# ----------------------------
FULFILLMENT_MAX_ATTEMPTS = int(os.getenv("FULFILLMENT_MAX_ATTEMPTS", "5"))
FULFILLMENT_BACKOFF_SECONDS = int(
    os.getenv("FULFILLMENT_BACKOFF_SECONDS", "5")
)
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_ALWAYS_EAGER = _env_bool("CELERY_ALWAYS_EAGER")

# ----------------------------
# Logging / runtime
# ----------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = _env_bool("LOG_JSON")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "dev-admin-token")


def is_production() -> bool:
    return ENVIRONMENT == "production"


def validate_environment(production: Optional[bool] = None) -> None:
    """Raise one ConfigError listing every problem found."""
    if production is None:
        production = is_production()

    errors: List[str] = []
    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")
    if not REDIS_URL:
        errors.append("REDIS_URL is required")
    if HOLD_TTL_SECONDS <= 0:
        errors.append("HOLD_TTL_SECONDS must be positive")
    if CHECKOUT_SESSION_TTL_SECONDS < HOLD_TTL_SECONDS:
        errors.append(
            "CHECKOUT_SESSION_TTL_SECONDS must not be shorter than "
            "HOLD_TTL_SECONDS"
        )

    if production:
        if DATABASE_URL.startswith("sqlite"):
            errors.append("DATABASE_URL must point to PostgreSQL in production")
        if MOCK_SECRET == "supersecret":
            errors.append("MOCK_SECRET must be changed from default value")
        if ADMIN_TOKEN == "dev-admin-token":
            errors.append("ADMIN_TOKEN must be changed from default value")
        if not MP_ACCESS_TOKEN or not MP_WEBHOOK_SECRET:
            errors.append(
                "MP_ACCESS_TOKEN and MP_WEBHOOK_SECRET must be configured"
            )
        if not (OPENPAY_MERCHANT_ID and OPENPAY_PRIVATE_KEY
                and OPENPAY_WEBHOOK_SECRET):
            errors.append("OPENPAY_* credentials must be configured")

    if errors:
        raise ConfigError(
            "environment validation failed: " + "; ".join(errors)
        )
