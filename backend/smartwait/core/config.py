from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PLACEHOLDER_TWILIO_SID = "your-twilio-account-sid"
PLACEHOLDER_TWILIO_TOKEN = "your-twilio-auth-token"


class DatabaseSettings(BaseModel):
    """Database configuration settings"""
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_USER: str = Field(default="smartwait")
    POSTGRES_PASSWORD: str = Field(default="smartwait_password")
    POSTGRES_DB: str = Field(default="smartwait")
    DATABASE_URL: Optional[str] = Field(default=None)

    # Connection pool settings (ignored for SQLite)
    DB_POOL_SIZE: int = Field(default=10, ge=1, le=100)
    DB_MAX_OVERFLOW: int = Field(default=20, ge=0, le=100)
    DB_POOL_TIMEOUT: int = Field(default=30, ge=1, le=300)
    DB_POOL_RECYCLE: int = Field(default=3600, ge=300, le=86400)

    @model_validator(mode="after")
    def assemble_db_connection(self) -> "DatabaseSettings":
        if self.DATABASE_URL:
            return self
        self.DATABASE_URL = (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )
        return self

    @property
    def is_sqlite(self) -> bool:
        return str(self.DATABASE_URL).startswith("sqlite")


class RedisSettings(BaseModel):
    """Redis configuration settings (queue event broadcasting)"""
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379)
    REDIS_DB: int = Field(default=0)
    REDIS_PASSWORD: Optional[str] = Field(default=None)
    REDIS_URL: Optional[str] = Field(default=None)

    REDIS_TIMEOUT: int = Field(default=5, ge=1, le=60)
    EVENTS_ENABLED: bool = Field(default=False)
    EVENTS_CHANNEL: str = Field(default="smartwait:queue_events")

    @model_validator(mode="after")
    def assemble_redis_connection(self) -> "RedisSettings":
        if self.REDIS_URL:
            return self
        auth_part = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        self.REDIS_URL = f"redis://{auth_part}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return self


class QueueSettings(BaseModel):
    """Queue behaviour settings"""
    WAIT_MINUTES_PER_POSITION: int = Field(default=15, ge=1, le=240)
    # Position that receives the "get ready" text (two places from being called)
    GET_READY_POSITION: int = Field(default=3, ge=2, le=50)
    ALLOCATION_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=20)
    STATS_WINDOW_HOURS: int = Field(default=24, ge=1, le=24 * 31)
    # Key for pg_advisory_xact_lock; all queue mutations share it
    ADVISORY_LOCK_KEY: int = Field(default=7_310_001)


class NotificationSettings(BaseModel):
    """SMS delivery settings"""
    TWILIO_ACCOUNT_SID: str = Field(default=PLACEHOLDER_TWILIO_SID)
    TWILIO_AUTH_TOKEN: str = Field(default=PLACEHOLDER_TWILIO_TOKEN)
    TWILIO_PHONE_NUMBER: str = Field(default="+1234567890")
    TWILIO_API_BASE_URL: str = Field(default="https://api.twilio.com/2010-04-01")
    TRANSPORT_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0, le=120)

    MAX_MESSAGE_LENGTH: int = Field(default=1600, ge=160, le=1600)

    # Retry policy
    MAX_RETRIES: int = Field(default=3, ge=0, le=10)
    BASE_DELAY_MS: int = Field(default=1000, ge=10, le=60_000)
    MAX_DELAY_MS: int = Field(default=30_000, ge=100, le=600_000)
    BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1.0, le=10.0)
    JITTER_RATIO: float = Field(default=0.1, ge=0.0, le=1.0)

    GET_READY_DEDUP_MINUTES: int = Field(default=30, ge=1, le=24 * 60)

    # Outbox worker
    WORKER_ENABLED: bool = Field(default=True)
    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=2.0, gt=0, le=300)
    WORKER_BATCH_SIZE: int = Field(default=50, ge=1, le=1000)
    # Claimed rows are hidden from other dispatchers until the lease runs out
    CLAIM_LEASE_SECONDS: int = Field(default=600, ge=5, le=24 * 60 * 60)
    STATUS_POLL_WINDOW_MINUTES: int = Field(default=60, ge=1, le=24 * 60)

    @property
    def uses_placeholder_credentials(self) -> bool:
        return (
            self.TWILIO_ACCOUNT_SID == PLACEHOLDER_TWILIO_SID
            or self.TWILIO_AUTH_TOKEN == PLACEHOLDER_TWILIO_TOKEN
        )

    @model_validator(mode="after")
    def validate_delays(self) -> "NotificationSettings":
        if self.MAX_DELAY_MS < self.BASE_DELAY_MS:
            raise ValueError("MAX_DELAY_MS must be >= BASE_DELAY_MS")
        return self


class Settings(BaseSettings):
    """Main application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    # Basic application settings
    ENVIRONMENT: str = Field(default="development", pattern="^(development|testing|staging|production)$")
    DEBUG: bool = Field(default=False)
    API_VERSION: str = Field(default="v1")
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    # Server settings
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000, ge=1000, le=65535)

    # CORS settings
    # Comma-separated origins
    CORS_ORIGINS: str = Field(default="http://localhost:3000")
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)

    PROMETHEUS_ENABLED: bool = Field(default=True)

    # Nested configuration objects
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate critical settings for production environment"""
        if self.ENVIRONMENT == "production":
            if self.DEBUG:
                raise ValueError("DEBUG must be False in production")
            origins = self.cors_origin_list
            if "*" in origins or "http://localhost:3000" in origins:
                raise ValueError("CORS_ORIGINS must not include localhost or wildcard in production")
            if self.database.is_sqlite:
                raise ValueError("SQLite is not supported in production")
        return self


# Global settings instance cache
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class AppConstants:
    """Application-wide constants"""

    SERVICE_NAME = "smartwait-api"
    NO_PATIENTS_WAITING_MESSAGE = "No patients waiting in queue"

    HEALTH_CHECK_TIMEOUT = 5
    CRITICAL_SERVICES = ["database"]


__all__ = [
    "Settings",
    "DatabaseSettings",
    "RedisSettings",
    "QueueSettings",
    "NotificationSettings",
    "get_settings",
    "AppConstants",
]
