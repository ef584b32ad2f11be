# backend/scopegate/core/config.py
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .enums import FailurePolicy


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")
    is_testing: bool = False  # Set to True when running tests
    log_level: str = Field(default="INFO", description="Root log level")

    # Relational grant store
    database_url: str = Field(
        default="sqlite:///./scopegate.db",
        description="SQLAlchemy URL of the relational store holding permission grants",
    )
    grant_store_timeout_seconds: float = Field(
        default=2.0,
        description="Upper bound for a single grant store call before it counts as unavailable",
    )

    # Counter store (Redis-compatible)
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_namespace: str = Field(
        default="scopegate",
        description="Prefix for every key written to the counter store",
    )
    counter_store_timeout_seconds: float = Field(
        default=0.25,
        description="Upper bound for a single counter store call before it counts as unavailable",
    )

    # Grant cache
    grant_cache_enabled: bool = Field(default=True, description="Cache grant lookups in Redis")
    grant_cache_ttl_seconds: int = Field(
        default=60,
        description="Seconds a cached grant stays valid; revocation invalidates eagerly",
    )

    # Behaviour when the counter or grant store cannot be reached
    authz_failure_policy: FailurePolicy = Field(
        default=FailurePolicy.FAIL_OPEN,
        description=(
            "fail_open lets guarded requests through (and logs the degradation); "
            "fail_closed rejects them with 503"
        ),
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("counter_store_timeout_seconds", "grant_store_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store timeouts must be positive")
        return value

    @field_validator("grant_cache_ttl_seconds")
    @classmethod
    def _bounded_cache_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("grant_cache_ttl_seconds must be positive")
        return value

    @field_validator("authz_failure_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value

    @property
    def fail_open(self) -> bool:
        return self.authz_failure_policy == FailurePolicy.FAIL_OPEN


settings = Settings()
