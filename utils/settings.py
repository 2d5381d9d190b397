"""
Application settings loaded from environment variables (.env supported).
"""
import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class PlanPricing(BaseModel):
    monthly_price: Decimal = Decimal("49.90")
    yearly_price: Decimal = Decimal("499.00")
    # Approved payments at or below this amount are treated as monthly
    monthly_threshold: Decimal = Decimal("49.90")
    currency: str = "BRL"


class Settings(BaseModel):
    app_env: str = "development"
    database_url: Optional[str] = None

    mp_access_token: str = ""
    mp_api_base_url: str = "https://api.mercadopago.com"
    mp_webhook_secret: Optional[str] = None
    mp_allow_unsigned_webhooks: bool = False

    pricing: PlanPricing = PlanPricing()
    frontend_url: str = "http://localhost:3000"

    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    redis_url: Optional[str] = None
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 900

    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


def load_settings() -> Settings:
    """
    Build Settings from the current environment.

    Raises RuntimeError if unsigned webhooks are enabled in production.
    """
    threshold = os.getenv("MP_MONTHLY_PLAN_THRESHOLD") or os.getenv("MP_MONTHLY_PRICE") or "49.90"
    settings = Settings(
        app_env=os.getenv("APP_ENV", "development"),
        database_url=os.getenv("DATABASE_URL"),
        mp_access_token=os.getenv("MP_ACCESS_TOKEN", ""),
        mp_api_base_url=os.getenv("MP_API_BASE_URL", "https://api.mercadopago.com"),
        mp_webhook_secret=os.getenv("MP_WEBHOOK_SECRET") or None,
        mp_allow_unsigned_webhooks=_env_bool("MP_ALLOW_UNSIGNED_WEBHOOKS"),
        pricing=PlanPricing(
            monthly_price=Decimal(os.getenv("MP_MONTHLY_PRICE", "49.90")),
            yearly_price=Decimal(os.getenv("MP_YEARLY_PRICE", "499.00")),
            monthly_threshold=Decimal(threshold),
            currency=os.getenv("MP_CURRENCY", "BRL"),
        ),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        redis_url=os.getenv("REDIS_URL") or None,
        rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "100")),
        rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )

    if settings.is_production and settings.mp_allow_unsigned_webhooks:
        raise RuntimeError("MP_ALLOW_UNSIGNED_WEBHOOKS cannot be enabled when APP_ENV=production")

    return settings


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
