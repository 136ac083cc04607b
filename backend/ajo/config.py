"""
Application Configuration: Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "Smart Ajo Payments API"
    APP_VERSION: str = "1.0.0"
    APP_IDENTIFIER: str = "smart-ajo"   # Stamped on every gateway metadata payload
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'smart_ajo.db'}"

    # --- Paystack ---
    PAYSTACK_SECRET_KEY: str = "sk_test_change_me"
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT_SECONDS: float = 30.0
    PAYSTACK_MAX_ATTEMPTS: int = 3
    PAYSTACK_BACKOFF_SECONDS: float = 0.5
    DEFAULT_CURRENCY: str = "NGN"

    # --- Auth (tokens issued by the external auth provider) ---
    JWT_SECRET: str = "smart-ajo-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = "authenticated"
    JWT_LEEWAY_SECONDS: int = 0

    # --- Activation ---
    ACTIVATION_MAX_ATTEMPTS: int = 3

    # --- Rate limiting ---
    RATE_LIMIT_REQUESTS: int = 30
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # --- HTTP ---
    CORS_ORIGINS: list[str] = ["*"]

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
