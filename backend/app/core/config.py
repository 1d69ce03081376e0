"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Subscription Service API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str
    DB_POOL_TIMEOUT_SECONDS: float = 10.0
    DB_COMMAND_TIMEOUT_SECONDS: float = 15.0

    # Redis - REQUIRED
    REDIS_URL: str

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # CORS
    CORS_ORIGINS: list[str] = []

    # Cache
    CACHE_ENABLED: bool = True
    CACHE_TIMEOUT_SECONDS: float = 0.5
    CACHE_RETRY_ATTEMPTS: int = 2
    CACHE_RETRY_INITIAL_DELAY: float = 0.05
    CACHE_RETRY_MAX_DELAY: float = 0.5

    # Cache TTLs (seconds)
    PLAN_CACHE_TTL: int = 600
    PROMO_CACHE_TTL: int = 600
    SUBSCRIPTION_CACHE_TTL: int = 300
    USAGE_CACHE_TTL: int = 300
    TRANSACTION_CACHE_TTL: int = 300

    # Billing
    CURRENCY: str = "INR"
    DEFAULT_PAYMENT_METHOD: str = "RAZORPAY"
    EXPIRY_REMINDER_DAYS: int = 7
    USAGE_HISTORY_DEFAULT_MONTHS: int = 6

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
