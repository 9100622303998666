from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Main configuration for the billing lifecycle engine.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "Billing Lifecycle Engine"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False

    @model_validator(mode='after')
    def validate_billing_config(self) -> 'Settings':
        """Ensure the keys needed to charge and operate safely are present."""
        if self.TESTING:
            return self

        if self.ENVIRONMENT in ["production", "staging"]:
            if not self.ADMIN_API_KEY:
                raise ValueError(f"SECURITY ERROR: ADMIN_API_KEY must be configured in {self.ENVIRONMENT} environment.")

            if self.ENVIRONMENT == "production" and len(self.ADMIN_API_KEY) < 32:
                raise ValueError("SECURITY ERROR: ADMIN_API_KEY must be at least 32 characters in production.")

            if not self.MERCADOPAGO_ACCESS_TOKEN:
                raise ValueError(f"MERCADOPAGO_ACCESS_TOKEN is required in {self.ENVIRONMENT}.")

            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(f"SECURITY ERROR: DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' in {self.ENVIRONMENT}. Current: {self.DB_SSL_MODE}")

        for attr_name in ["BACKEND_URL", "FRONTEND_URL"]:
            val = getattr(self, attr_name)
            if self.ENVIRONMENT == "production" and val and val.startswith("http://"):
                import structlog
                structlog.get_logger().warning(
                    f"{attr_name.lower()}_not_https",
                    **{attr_name.lower(): val},
                    msg=f"{attr_name} should use HTTPS in production"
                )

        return self

    # Admin API Key (manual triggers, scheduler status)
    ADMIN_API_KEY: Optional[str] = None

    # Public URLs used in checkout back-links and gateway notifications
    FRONTEND_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"

    # Database
    DATABASE_URL: str  # Required
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10

    # MercadoPago (renewal charges)
    MERCADOPAGO_ACCESS_TOKEN: Optional[str] = None
    MERCADOPAGO_BASE_URL: str = "https://api.mercadopago.com"
    BILLING_CURRENCY: str = "ARS"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # SMTP Email (reminders, dunning and suspension notices)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "billing@localhost"
    NOTIFICATION_QUEUE_SIZE: int = 1000

    # Scheduler
    VALIDATION_INTERVAL_HOURS: int = 6
    RENEWAL_INTERVAL_HOURS: int = 12
    SCHEDULER_STARTUP_DELAY_SECONDS: int = 5
    SCHEDULER_ENABLED: bool = True

    # 1 keeps gateway call volume predictable; higher values fan out per tick
    BILLING_MAX_CONCURRENCY: int = 1

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
