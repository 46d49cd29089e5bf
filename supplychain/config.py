from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./supplychain.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Supply Chain ERP"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Fulfillment
    DEFAULT_DELIVERY_DAYS: int = 7  # expected_delivery_date = order_date + N days
    FULFILLMENT_STEP_TIMEOUT_SECONDS: float = 10.0  # Per-step bound inside place_order
    INVENTORY_CAS_RETRIES: int = 5  # Compare-and-swap attempts for set_exact

    # Payments
    PAYMENT_GATEWAY: str = "offline"  # Options: offline, decline
    DEFAULT_PAYMENT_METHOD: str = "credit_card"

    # Domain event forwarding (optional)
    EVENT_WEBHOOK_URL: Optional[str] = None
    EVENT_WEBHOOK_TIMEOUT_SECONDS: float = 5.0

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    RECONCILIATION_INTERVAL_MINUTES: int = 60

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator('PAYMENT_GATEWAY', mode='before')
    @classmethod
    def normalize_gateway(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
