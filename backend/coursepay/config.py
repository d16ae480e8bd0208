"""
Application Configuration — Environment & Settings
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
    APP_NAME: str = "Course Payment Ledger API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'coursepay.db'}"

    # --- Security ---
    SECRET_KEY: str = "coursepay-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]
    CLIENT_URL: str = "http://localhost:5173"
    CSRF_COOKIE_NAME: str = "_csrf"
    CSRF_HEADER_NAME: str = "X-CSRF-Token"
    CSRF_TOKEN_TTL_SECONDS: int = 3600
    REFUND_REQUIRE_2FA: bool = True

    # --- Shared counters (empty = in-process store) ---
    REDIS_URL: str = ""

    # --- Payment Gateway (empty credentials = mock mode) ---
    GATEWAY_BASE_URL: str = "https://smartgateway.example.com/api/v1"
    GATEWAY_MERCHANT_ID: str = ""
    GATEWAY_API_KEY: str = ""
    GATEWAY_API_SECRET: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_ENVIRONMENT: str = "sandbox"
    CURRENCY: str = "INR"

    # --- Transaction lifecycle ---
    MAX_PAYMENT_ATTEMPTS: int = 4
    TRANSACTION_LOCK_TIMEOUT_SECONDS: float = 5.0

    # --- Background jobs ---
    SCHEDULER_ENABLED: bool = True
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300
    DAILY_RECONCILIATION_HOUR: int = 2          # UTC; negative disables the daily run
    MONITORING_ALERT_INTERVAL_SECONDS: int = 900
    ALERT_RECIPIENT: str = "payments-admin"

    # --- Monitoring ---
    HEALTH_DEGRADED_MS: float = 1000.0
    ALERT_SUCCESS_RATE_THRESHOLD: float = 90.0
    ALERT_PROCESSING_TIME_SECONDS: float = 5.0

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
