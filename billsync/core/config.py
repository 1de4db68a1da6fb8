import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

from billsync.core.errors import ConfigurationError


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_VERSION: Optional[str] = None

    # Admin access (manual trigger)
    ADMIN_KEY: Optional[str] = None

    # Reconciliation
    RECONCILE_WEBHOOK_URL: Optional[str] = None
    RECONCILE_EXCLUDED_IDENTITIES: str = ""  # comma-separated emails / name substrings / user ids
    RECONCILE_TIME_BUDGET_SECONDS: int = 600  # 0 = no budget
    RECONCILE_PAGE_SIZE: int = 100
    RECONCILE_PROVIDER_RETRIES: int = 0  # 0 = retry on next scheduled run only
    RECONCILE_RETRY_BACKOFF_SECONDS: float = 2.0
    RECONCILE_DEFAULT_MONTHLY_PLAN: str = "pro_monthly"
    RECONCILE_DEFAULT_ANNUAL_PLAN: str = "pro_annual"
    RECONCILE_DRY_RUN: bool = False

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise ConfigurationError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("billsync")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise ConfigurationError(message)
        log.warning(message)

    return True


def require_run_config(settings_obj: Optional[Settings] = None) -> None:
    """Fail fast before a reconciliation run when the provider key is absent."""
    cfg = settings_obj or settings
    if not getattr(cfg, "STRIPE_SECRET_KEY", None):
        raise ConfigurationError("STRIPE_SECRET_KEY is required to run reconciliation")
    if getattr(cfg, "RECONCILE_PAGE_SIZE", 100) not in range(1, 101):
        raise ConfigurationError("RECONCILE_PAGE_SIZE must be between 1 and 100")
