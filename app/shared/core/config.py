from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for the practice billing core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "Practice Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False

    @model_validator(mode='after')
    def validate_billing_config(self) -> 'Settings':
        """Ensure the Stripe credentials are present before serving real traffic."""
        if self.TESTING:
            return self

        if self.is_production:
            if not self.STRIPE_SECRET_KEY:
                raise ValueError("STRIPE_SECRET_KEY must be set in production.")
            if not self.STRIPE_WEBHOOK_SECRET:
                raise ValueError(
                    "SECURITY ERROR: STRIPE_WEBHOOK_SECRET must be set in production! "
                    "Unsigned webhooks would be able to upgrade any tenant."
                )
            if not self.STRIPE_PRICE_BASE or not self.STRIPE_PRICE_EXTRA_SEAT:
                raise ValueError("STRIPE_PRICE_BASE and STRIPE_PRICE_EXTRA_SEAT are required in production.")

        if self.ENVIRONMENT == "production" and self.FRONTEND_URL.startswith("http://"):
            import structlog
            structlog.get_logger().warning(
                "frontend_url_not_https",
                frontend_url=self.FRONTEND_URL,
                msg="FRONTEND_URL should use HTTPS in production"
            )

        return self

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./billing.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Used for default checkout success/cancel redirects
    FRONTEND_URL: str = "http://localhost:5173"

    # Stripe Billing
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_BASE: Optional[str] = None        # Pro plan, flat monthly
    STRIPE_PRICE_EXTRA_SEAT: Optional[str] = None  # Per additional lawyer seat
    STRIPE_TIMEOUT_SECONDS: float = 30.0
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return not self.DEBUG


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
