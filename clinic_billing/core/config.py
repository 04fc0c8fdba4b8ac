import logging
from typing import List, Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings

# Keys without which billing cannot run end to end
REQUIRED_KEYS = (
    "DATABASE_URL",
    "SUPABASE_JWT_SECRET",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_ID",
)


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Session JWTs from the hosted auth provider
    SUPABASE_JWT_SECRET: Optional[str] = None
    SUPABASE_JWT_AUDIENCE: str = "authenticated"

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None  # the single pro plan price
    STRIPE_TRIAL_DAYS: int = 7
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Skip events older than the last applied one (conditional update)
    BILLING_STRICT_ORDERING: bool = False

    APP_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()


def missing_keys(cfg=None) -> List[str]:
    cfg = cfg or settings
    return [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report missing configuration keys (never their values).

    Strict mode (argument, else CONFIG_STRICT) raises RuntimeError;
    otherwise a warning is logged and startup continues.
    """
    cfg = settings_obj or settings
    missing = missing_keys(cfg)
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False):
        raise RuntimeError(message)
    (logger or logging.getLogger("clinic_billing")).warning(message)
    return True
