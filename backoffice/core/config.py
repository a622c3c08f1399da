import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Payment gateway
    PAYMENT_PROVIDER: str = "flutterwave"  # flutterwave | stripe
    FLUTTERWAVE_SECRET_KEY: Optional[str] = None
    FLUTTERWAVE_SECRET_HASH: Optional[str] = None
    FLUTTERWAVE_BASE_URL: str = "https://api.flutterwave.com/v3"
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Gateway call policy
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_BACKOFF_BASE_SECONDS: float = 0.5
    GATEWAY_BACKOFF_MAX_SECONDS: float = 8.0

    # App URLs
    BASE_URL: str = "http://localhost:8000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated
    PAYMENT_REDIRECT_URL: Optional[str] = None  # defaults to {BASE_URL}/subscription/success

    # Subscription lifecycle policy
    GRACE_PERIOD_DAYS: int = 7
    PENDING_CHECKOUT_TTL_HOURS: int = 24
    RENEWAL_WINDOW_DAYS: int = 3
    ENTITLEMENT_CACHE_TTL_SECONDS: int = 60

    # Admin access (yes/no capability check)
    ADMIN_KEY: Optional[str] = None

    # Auth collaborator
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_ALLOW_HEADER_FALLBACK: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def redirect_url(self) -> str:
        return self.PAYMENT_REDIRECT_URL or f"{self.BASE_URL.rstrip('/')}/subscription/success"


settings = Settings()


def required_keys_for(cfg: Settings) -> list:
    """Keys that must be present for the configured payment provider."""
    keys = ["DATABASE_URL", "ADMIN_KEY", "AUTH_JWT_SECRET"]
    if cfg.PAYMENT_PROVIDER == "stripe":
        keys += ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]
    else:
        keys += ["FLUTTERWAVE_SECRET_KEY", "FLUTTERWAVE_SECRET_HASH"]
    return keys


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("backoffice")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    if cfg.PAYMENT_PROVIDER not in ("flutterwave", "stripe"):
        message = f"Unsupported PAYMENT_PROVIDER: {cfg.PAYMENT_PROVIDER}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    missing = [key for key in required_keys_for(cfg) if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
