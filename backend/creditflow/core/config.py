"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "creditflow"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database - REQUIRED
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # Redis - REQUIRED (Celery broker and result backend)
    REDIS_URL: str

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str

    # Key for connector credentials stored at rest, falls back to SECRET_KEY
    INTEGRATION_ENCRYPTION_KEY: Optional[str] = None

    # CORS
    CORS_ORIGINS: list[str] = []

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Billing periods
    MONTHLY_PERIOD_DAYS: int = 30
    YEARLY_PERIOD_DAYS: int = 365

    # Credit ledger
    LEDGER_MAX_RETRIES: int = 5
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.05
    DEFAULT_TRANSACTION_LIMIT: int = 50
    USAGE_STATS_DEFAULT_DAYS: int = 30

    # Integration connectors
    CONNECTOR_TEST_TIMEOUT_SECONDS: float = 10.0
    CONNECTOR_QUERY_TIMEOUT_SECONDS: float = 30.0

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    SUBSCRIPTION_RENEWAL_INTERVAL_SECONDS: int = 3600

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
