"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Language School Scheduling"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── JWT (tokens are issued by the identity service) ──────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Scheduling ───────────────────────────────────────────
    SCHOOL_TIMEZONE: str = "UTC"            # Availability rules are wall-clock times in this zone
    SLOT_STEP_MINUTES: int = 30
    DEFAULT_CLASS_DURATION_MINUTES: int = 60
    MAX_CLASS_DURATION_MINUTES: int = 240
    MIN_BOOKING_NOTICE_MINUTES: int = 0
    CANCELLATION_CUTOFF_MINUTES: int = 0    # 0 = refundable until the class starts
    BOOKING_WRITE_TIMEOUT_SECONDS: float = 10.0

    # ── External collaborators ───────────────────────────────
    MEETING_PROVISIONER_URL: Optional[str] = None
    MEETING_PROVISIONER_TOKEN: str = ""
    MEETING_PROVISIONER_TIMEOUT_SECONDS: float = 5.0
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    REMINDER_LEAD_HOURS: int = 24

    @field_validator("SLOT_STEP_MINUTES", "DEFAULT_CLASS_DURATION_MINUTES", "MAX_CLASS_DURATION_MINUTES")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of minutes")
        return v

    @field_validator("MIN_BOOKING_NOTICE_MINUTES", "CANCELLATION_CUTOFF_MINUTES")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_postgres(self) -> bool:
        return self.DATABASE_URL.startswith("postgresql")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance. Call this everywhere."""
    return Settings()


settings = get_settings()
