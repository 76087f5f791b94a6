"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./instagen.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    APP_BASE_URL: str = "http://localhost:3000"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Credits
    CREDITS_BASELINE: int = 100
    CREDITS_USAGE_LOG_LIMIT: int = 10
    CREDITS_STORE_TIMEOUT_SECONDS: float = 5.0

    # Stripe
    BILLING_ENABLED: bool = True
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_CURRENCY: str = "eur"

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    JWT_ISSUER: str = "instagen"
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    insecure_values = {
        "",
        "change_me_in_production",
        "your_jwt_secret_change_in_production",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()

    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
    if settings.BILLING_ENABLED and not (settings.STRIPE_WEBHOOK_SECRET or "").strip():
        raise ValueError("BILLING_ENABLED requires STRIPE_WEBHOOK_SECRET to verify payment webhooks.")
    if int(settings.CREDITS_BASELINE) < 0:
        raise ValueError("CREDITS_BASELINE must not be negative.")
