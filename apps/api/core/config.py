"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and scripts.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (e.g. sqlite:///./cadence.db for local dev).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="cadence")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour
    # Applied to every Postgres connection; store calls must never hang a handler.
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=5000, ge=100)

    # JWT Authentication - REQUIRED for token verification
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30 * 24 * 60)

    # Cadence policy
    CADENCE_WEEK_CAP: int = Field(default=8, ge=1)
    CADENCE_DUE_LOCAL_HOUR: int = Field(default=19, ge=0, le=23)
    CADENCE_INTERVAL_DAYS: int = Field(default=7, ge=1)
    TRIAL_DAYS: int = Field(default=7, ge=1, le=30)
    CLOCK_SKEW_TOLERANCE_S: int = Field(default=300, ge=0)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Ledger reconciliation (worker)
    LEDGER_REPROCESS_AFTER_S: int = Field(default=300, ge=0)
    LEDGER_REPROCESS_BATCH_SIZE: int = Field(default=100, ge=1)
    LEDGER_MAX_ATTEMPTS: int = Field(default=5, ge=1)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (for checkout/portal redirects back to the UI).
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")

    # Stripe (hosted checkout/portal + webhooks)
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_PRICE_MONTHLY_ID: Optional[str] = Field(default=None)
    STRIPE_PRICE_ANNUAL_ID: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_SUCCESS_URL: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_CANCEL_URL: Optional[str] = Field(default=None)
    STRIPE_PORTAL_RETURN_URL: Optional[str] = Field(default=None)

    # RevenueCat (in-app purchases). Webhooks fail closed when unset.
    REVENUECAT_WEBHOOK_SECRET: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
