import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"  # "development" | "test" | "production"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE: Optional[str] = None
    STRIPE_PRICE_MAP: Optional[str] = None  # "price_a:PRO,price_b:ENTERPRISE"
    STRIPE_MAX_NETWORK_RETRIES: int = 1

    # Upper bound for a single subscription lookup during manual sync
    BILLING_PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Auth (token verification only, issuance lives elsewhere)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"

    # Tombstoned users are hard-deleted after this many days
    USER_RETENTION_DAYS: int = 30

    CORS_ALLOW_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("saas_engine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not (cfg.STRIPE_PRICE_PRO or cfg.STRIPE_PRICE_ENTERPRISE or cfg.STRIPE_PRICE_MAP):
        missing.append("STRIPE_PRICE_PRO|STRIPE_PRICE_ENTERPRISE|STRIPE_PRICE_MAP")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
