# backend/mentorbook/core/config.py
import logging
import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    """Runtime configuration for the entitlement and booking core."""

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "SITE_MODE"),
        description="Deployment environment (development, staging, production, test)",
    )

    # Database
    database_url: str = Field(
        default="sqlite+pysqlite:///./mentorbook.db",
        description="SQLAlchemy URL for the primary database",
    )
    db_pool_size: int = Field(default=5, ge=1)
    db_max_overflow: int = Field(default=5, ge=0)
    db_pool_timeout: int = Field(default=5, ge=1, description="Seconds to wait for a connection")
    db_pool_recycle: int = Field(default=300, ge=1)
    db_statement_timeout_ms: int = Field(
        default=15000,
        ge=0,
        description="Postgres statement_timeout applied to every connection (0 disables)",
    )

    # Celery / Redis
    redis_url: str = Field(default="redis://localhost:6379/0")
    celery_broker_url: Optional[str] = Field(default=None)
    celery_result_backend: Optional[str] = Field(default=None)

    # Holds
    hold_default_ttl_minutes: int = Field(
        default=15,
        ge=1,
        description="Expiry applied to holds created without an explicit TTL",
    )
    hold_reaper_interval_seconds: int = Field(default=300, ge=10)
    hold_reaper_batch_size: int = Field(default=100, ge=1, le=10000)

    # Entitlements
    entitlement_expiration_batch_size: int = Field(default=500, ge=1)

    # Ledger archive
    ledger_archive_after_days: int = Field(
        default=90,
        ge=1,
        description="Age at which ledger entries are archived when no policy applies",
    )
    ledger_archive_batch_size: int = Field(default=1000, ge=1, le=50000)
    ledger_archive_max_range_days: int = Field(
        default=365,
        ge=1,
        description="Widest date range a ledger query may span when it includes the archive",
    )

    # Booking
    booking_occupy_student_calendar: bool = Field(
        default=True,
        description="Also reserve the student's calendar when a session is booked",
    )

    # Meeting provider
    meeting_provider: Literal["fake", "gateway"] = Field(
        default="fake",
        description="Meeting provider backend: in-memory fake or the meetings gateway",
    )
    meeting_gateway_url: str = Field(default="http://localhost:8090/v1")
    meeting_gateway_access_key: str = Field(default="")
    meeting_gateway_secret: SecretStr = Field(default=SecretStr(""))
    meeting_gateway_timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or "development"
        return value

    @property
    def is_testing(self) -> bool:
        return self.environment == "test" or is_running_tests()

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def get_database_url(self) -> str:
        return self.database_url

    def get_broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    def get_result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url


settings = Settings()
