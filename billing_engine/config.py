from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./billing_engine.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Billing Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Provider Billing API
    PROVIDER_API_URL: str = "https://api.shipbob.com"
    PROVIDER_API_TOKEN: str = ""  # Personal access token
    PROVIDER_API_VERSION: str = "2025-07"  # Versioned path prefix for billing endpoints
    PROVIDER_PAGE_SIZE: int = 1000
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_REQUEST_DELAY_SECONDS: float = 0.25  # Fixed delay between paginated calls
    PROVIDER_RATE_LIMIT_COOLDOWN_SECONDS: float = 60.0  # Wait after a 429 when no Retry-After is sent
    PROVIDER_MAX_RETRIES: int = 5
    PROVIDER_BACKOFF_BASE_SECONDS: float = 2.0
    PROVIDER_BACKOFF_MAX_SECONDS: float = 60.0

    # Secondary daily cost extract (delivered by file transfer)
    COST_EXTRACT_DIR: str = "./cost_extracts"
    COST_EXTRACT_FILE_PREFIX: str = "extras-"

    # Tax policy - fee types whose ingested amount already includes taxes.
    # Accepts JSON list or comma-separated string.
    TAX_INCLUSIVE_FEE_TYPES: list[str] = []

    # System tenants for rows with no merchant owner
    PAYMENTS_CLIENT_NAME: str = "ShipBob Payments"
    PROCESSING_FEE_CLIENT_NAME: str = "Jetpack Costs"

    # Jobs
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "America/New_York"
    JOB_MAX_CONCURRENT_TENANTS: int = 5
    INGEST_INTERVAL_MINUTES: int = 60
    INGEST_LOOKBACK_DAYS: int = 3
    ATTRIBUTION_BATCH_SIZE: int = 1000


    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    @field_validator('TAX_INCLUSIVE_FEE_TYPES', mode='before')
    @classmethod
    def parse_fee_type_list(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return []
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [fee.strip() for fee in v.split(',') if fee.strip()]
        return v

    @property
    def provider_billing_path(self) -> str:
        return f"/{self.PROVIDER_API_VERSION}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
