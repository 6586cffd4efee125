import os
from dataclasses import dataclass
from typing import Optional


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _price_env(*names: str) -> Optional[str]:
    """Read the first configured price id, ignoring .env.example placeholders."""
    for name in names:
        value = _env(name)
        if value and not value.startswith("price_your_"):
            return value
    return None


@dataclass(frozen=True)
class Settings:
    """
    Static configuration for the billing service.

    Built once per application from environment variables and handed to every
    component that needs it, instead of each module reading os.environ.
    """
    database_url: str = "sqlite:///./landlordhub.db"

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_basic_price_id: Optional[str] = None
    stripe_growth_price_id: Optional[str] = None
    stripe_pro_price_id: Optional[str] = None
    stripe_max_retries: int = 3
    stripe_retry_delay: float = 1.0

    app_url: str = "http://localhost:3000"

    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"

    provisional_period_days: int = 30
    staleness_grace_hours: int = 24

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env("DATABASE_URL", cls.database_url),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            # The "basic" plan was configured as STARTER in older deployments
            stripe_basic_price_id=_price_env("STRIPE_BASIC_PRICE_ID", "STRIPE_STARTER_PRICE_ID"),
            stripe_growth_price_id=_price_env("STRIPE_GROWTH_PRICE_ID"),
            stripe_pro_price_id=_price_env("STRIPE_PRO_PRICE_ID"),
            stripe_max_retries=int(_env("STRIPE_MAX_RETRIES", str(cls.stripe_max_retries))),
            stripe_retry_delay=float(_env("STRIPE_RETRY_DELAY", str(cls.stripe_retry_delay))),
            app_url=_env("NEXT_PUBLIC_APP_URL", _env("APP_URL", cls.app_url)).rstrip("/"),
            jwt_secret=_env("JWT_SECRET"),
            jwt_algorithm=_env("JWT_ALGORITHM", cls.jwt_algorithm),
            provisional_period_days=int(_env("PROVISIONAL_PERIOD_DAYS", str(cls.provisional_period_days))),
            staleness_grace_hours=int(_env("STALENESS_GRACE_HOURS", str(cls.staleness_grace_hours))),
            log_level=_env("LOG_LEVEL", cls.log_level),
        )

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def checkout_success_url(self) -> str:
        return f"{self.app_url}/account?success=true"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.app_url}/pricing?canceled=true"

    @property
    def portal_return_url(self) -> str:
        return f"{self.app_url}/account"

    @property
    def customer_portal_url(self) -> str:
        return f"{self.app_url}/api/create-portal-session"
