import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Trial variants
    TRIAL_VARIANTS_FILE: Optional[str] = None  # JSON table; built-in table when unset
    TRIAL_DEFAULT_VARIANT: str = "control"
    TRIAL_AB_TEST_ENABLED: bool = False

    # Billing collaborator
    BILLING_TIMEOUT_SECONDS: float = 10.0
    BILLING_PERIOD_DAYS: int = 30

    # Per-tenant serialization
    TENANT_LOCK_TIMEOUT_SECONDS: float = 15.0

    # Applied event ids of archived periods are kept this long (> webhook retry windows)
    USAGE_EVENT_RETENTION_DAYS: int = 7
    USAGE_WARNING_THRESHOLDS: List[int] = [70, 90]

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
    log = logger or logging.getLogger("trialmeter")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BILLING_TIMEOUT_SECONDS <= 0:
        raise RuntimeError("BILLING_TIMEOUT_SECONDS must be positive")

    return True
