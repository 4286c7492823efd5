import logging
import math
from dataclasses import dataclass

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

DEFAULT_PRICE = 399
TEST_DEFAULT_PRICE = 1


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Payment gateway (CloudPayments); *_TEST values are used when CP_MODE=test
    CP_MODE: str = "live"
    CP_PUBLIC_ID: Optional[str] = None
    CP_API_SECRET: Optional[str] = None
    CP_PUBLIC_ID_TEST: Optional[str] = None
    CP_API_SECRET_TEST: Optional[str] = None
    CP_WEBHOOK_SECRET: Optional[str] = None
    CP_WEBHOOK_SECRET_TEST: Optional[str] = None
    CP_API_BASE_URL: str = "https://api.cloudpayments.ru"
    CP_TIMEOUT_SECONDS: float = 5.0

    # Billing policy
    BILLING_PRICE: Optional[str] = None
    BILLING_CURRENCY: str = "RUB"
    TRIAL_DAYS: int = 7
    BILLING_DESCRIPTION: str = "MatTrainer subscription"

    # Webhook seen-set
    WEBHOOK_DEDUP_ENABLED: bool = True
    WEBHOOK_DEDUP_RETENTION_DAYS: int = 90

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # HTTP
    CORS_ORIGINS: str = "http://localhost:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


@dataclass(frozen=True)
class GatewayConfig:
    """Gateway credentials for the mode selected at process start."""
    mode: str
    public_id: str
    api_secret: str
    webhook_secret: str
    base_url: str
    timeout_seconds: float


@dataclass(frozen=True)
class BillingPolicy:
    price: int
    currency: str
    trial_days: int
    description: str
    dedup_enabled: bool
    dedup_retention_days: int


def _clean(value: Optional[str]) -> str:
    return (value or "").strip().strip('"').strip("'").strip()


def get_gateway_mode(settings_obj: Optional[Settings] = None) -> str:
    cfg = settings_obj or settings
    return "test" if _clean(cfg.CP_MODE).lower() == "test" else "live"


def resolve_gateway_config(settings_obj: Optional[Settings] = None) -> GatewayConfig:
    """Select live or test credentials once.

    The webhook secret falls back to the API secret of the same mode.
    Missing values come back as empty strings; validate_env rejects them.
    """
    cfg = settings_obj or settings
    mode = get_gateway_mode(cfg)
    if mode == "test":
        public_id = _clean(cfg.CP_PUBLIC_ID_TEST)
        api_secret = _clean(cfg.CP_API_SECRET_TEST)
        webhook_secret = _clean(cfg.CP_WEBHOOK_SECRET_TEST)
    else:
        public_id = _clean(cfg.CP_PUBLIC_ID)
        api_secret = _clean(cfg.CP_API_SECRET)
        webhook_secret = _clean(cfg.CP_WEBHOOK_SECRET)

    return GatewayConfig(
        mode=mode,
        public_id=public_id,
        api_secret=api_secret,
        webhook_secret=webhook_secret or api_secret,
        base_url=_clean(cfg.CP_API_BASE_URL).rstrip("/"),
        timeout_seconds=float(cfg.CP_TIMEOUT_SECONDS),
    )


def get_billing_price(settings_obj: Optional[Settings] = None) -> int:
    cfg = settings_obj or settings
    raw = _clean(cfg.BILLING_PRICE)
    try:
        value = float(raw) if raw else math.nan
    except ValueError:
        value = math.nan
    if not math.isfinite(value) or value <= 0:
        return TEST_DEFAULT_PRICE if get_gateway_mode(cfg) == "test" else DEFAULT_PRICE
    return max(1, math.floor(value))


def billing_policy_from_settings(settings_obj: Optional[Settings] = None) -> BillingPolicy:
    cfg = settings_obj or settings
    return BillingPolicy(
        price=get_billing_price(cfg),
        currency=_clean(cfg.BILLING_CURRENCY).upper() or "RUB",
        trial_days=int(cfg.TRIAL_DAYS),
        description=_clean(cfg.BILLING_DESCRIPTION) or "Subscription",
        dedup_enabled=bool(cfg.WEBHOOK_DEDUP_ENABLED),
        dedup_retention_days=int(cfg.WEBHOOK_DEDUP_RETENTION_DAYS),
    )


def log_config_summary(settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> None:
    """Log which gateway mode and policy are active. Secrets are not logged."""
    cfg = settings_obj or settings
    log = logger or logging.getLogger("mattrainer")
    gateway = resolve_gateway_config(cfg)
    policy = billing_policy_from_settings(cfg)
    log.info(
        "config.loaded",
        extra={
            "gateway_mode": gateway.mode,
            "price": policy.price,
            "currency": policy.currency,
            "trial_days": policy.trial_days,
            "dedup_enabled": policy.dedup_enabled,
        },
    )
