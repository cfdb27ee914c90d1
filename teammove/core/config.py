import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Clerk Auth
    CLERK_SECRET_KEY: Optional[str] = None

    # Database & Queue
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 1

    # Stripe price references, one per paid plan
    STRIPE_PRICE_EVENEMENTIELLE_SINGLE: Optional[str] = None
    STRIPE_PRICE_EVENEMENTIELLE_PACK10: Optional[str] = None
    STRIPE_PRICE_PRO_CLUB: Optional[str] = None
    STRIPE_PRICE_PRO_PME: Optional[str] = None
    STRIPE_PRICE_PRO_ENTREPRISE: Optional[str] = None

    # Billing behaviour
    CHECKOUT_SESSION_TTL_MINUTES: int = 60  # Stripe accepts 30 minutes to 24 hours
    PAST_DUE_GRACE_DAYS: int = 7
    NOTIFICATIONS_ENABLED: bool = False

    # App URLs
    APP_URL: str = "http://localhost:5173"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("teammove")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]
    if cfg.ENV == "production":
        # No header fallback in production: every request needs a Clerk token
        required_keys.append("CLERK_SECRET_KEY")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
