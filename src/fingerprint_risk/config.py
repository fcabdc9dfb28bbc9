"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
fingerprint risk engine, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fingerprint_risk.detector.models import DetectionThresholds
from fingerprint_risk.ingestor.models import ActionType
from fingerprint_risk.limiter.rate_limiter import RateLimitPolicy
from fingerprint_risk.storage.repos import StorePolicy


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(
            ("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")
        ):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class RateLimitSettings(BaseSettings):
    """Rate limiter settings."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    backend: Literal["database", "redis"] = Field(
        default="database",
        alias="RATE_LIMIT_BACKEND",
        description="Store holding the rate-limit counters",
    )
    url_creation_max: int = Field(
        default=10,
        alias="RATE_LIMIT_URL_CREATION_MAX",
        description="URL creations allowed per window",
        ge=0,
    )
    url_creation_window_minutes: int = Field(
        default=60,
        alias="RATE_LIMIT_URL_CREATION_WINDOW_MINUTES",
        description="URL creation window length",
        ge=1,
    )
    default_max: int | None = Field(
        default=None,
        alias="RATE_LIMIT_DEFAULT_MAX",
        description="Attempts allowed per window for other action types (unset: unlimited)",
        ge=0,
    )
    default_window_minutes: int = Field(
        default=5,
        alias="RATE_LIMIT_DEFAULT_WINDOW_MINUTES",
        description="Window length for other action types",
        ge=1,
    )

    def to_policies(self) -> dict[ActionType, RateLimitPolicy]:
        """Return the per-action-type quotas."""
        return {
            ActionType.URL_CREATION: RateLimitPolicy(
                max_attempts=self.url_creation_max,
                window_minutes=self.url_creation_window_minutes,
            ),
        }

    def to_default_policy(self) -> RateLimitPolicy | None:
        """Return the quota for action types without their own policy."""
        if self.default_max is None:
            return None
        return RateLimitPolicy(
            max_attempts=self.default_max,
            window_minutes=self.default_window_minutes,
        )


class StoreSettings(BaseSettings):
    """Store call deadline and retry settings."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    timeout_seconds: float = Field(
        default=3.0,
        alias="STORE_TIMEOUT_SECONDS",
        description="Deadline for a single store call",
        gt=0,
    )
    max_retries: int = Field(
        default=3,
        alias="STORE_MAX_RETRIES",
        description="Attempts made for a conflicting write",
        ge=1,
    )
    retry_delay_seconds: float = Field(
        default=0.05,
        alias="STORE_RETRY_DELAY_SECONDS",
        description="Initial retry backoff, doubled per attempt",
        ge=0,
    )

    def to_policy(self) -> StorePolicy:
        """Return the StorePolicy for repositories."""
        return StorePolicy(
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay_seconds,
        )


class DetectionSettings(BaseSettings):
    """Detection threshold overrides.

    Field names match DetectionThresholds; every default is the
    production policy.
    """

    model_config = SettingsConfigDict(env_prefix="DETECTION_")

    velocity_window_minutes: int = Field(
        default=60, alias="DETECTION_VELOCITY_WINDOW_MINUTES", ge=1
    )
    extreme_velocity: int = Field(default=20, alias="DETECTION_EXTREME_VELOCITY", ge=0)
    high_velocity: int = Field(default=10, alias="DETECTION_HIGH_VELOCITY", ge=0)
    moderate_velocity: int = Field(default=5, alias="DETECTION_MODERATE_VELOCITY", ge=0)
    burst_gap_seconds: float = Field(default=60.0, alias="DETECTION_BURST_GAP_SECONDS", gt=0)
    burst_min_run: int = Field(default=4, alias="DETECTION_BURST_MIN_RUN", ge=2)
    visit_window_hours: int = Field(default=24, alias="DETECTION_VISIT_WINDOW_HOURS", ge=1)
    high_visit_volume: int = Field(default=100, alias="DETECTION_HIGH_VISIT_VOLUME", ge=0)
    rapid_click_gap_seconds: float = Field(
        default=5.0, alias="DETECTION_RAPID_CLICK_GAP_SECONDS", gt=0
    )
    rapid_click_min_run: int = Field(default=6, alias="DETECTION_RAPID_CLICK_MIN_RUN", ge=1)
    direct_access_ratio: float = Field(
        default=0.8, alias="DETECTION_DIRECT_ACCESS_RATIO", ge=0, le=1
    )
    anti_detect_min_indicators: int = Field(
        default=3, alias="DETECTION_ANTI_DETECT_MIN_INDICATORS", ge=1
    )
    suspicious_timing_ms: float = Field(default=100.0, alias="DETECTION_SUSPICIOUS_TIMING_MS", ge=0)
    min_screen_width: int = Field(default=800, alias="DETECTION_MIN_SCREEN_WIDTH", ge=0)
    min_screen_height: int = Field(default=600, alias="DETECTION_MIN_SCREEN_HEIGHT", ge=0)
    duplicate_fingerprint_min: int = Field(
        default=1, alias="DETECTION_DUPLICATE_FINGERPRINT_MIN", ge=1
    )
    similar_signature_min: int = Field(default=3, alias="DETECTION_SIMILAR_SIGNATURE_MIN", ge=1)
    anomaly_threshold: float = Field(default=0.5, alias="DETECTION_ANOMALY_THRESHOLD", ge=0, le=1)
    ml_risk_multiplier: float = Field(default=5.0, alias="DETECTION_ML_RISK_MULTIPLIER", ge=0)
    suspicious_score: float = Field(default=3.0, alias="DETECTION_SUSPICIOUS_SCORE", ge=0)

    def to_thresholds(self) -> DetectionThresholds:
        """Return the thresholds as a DetectionThresholds."""
        return DetectionThresholds(**self.model_dump())


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from fingerprint_risk.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.rate_limit.backend)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Nested configuration groups
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "rate_limit": {
                "backend": self.rate_limit.backend,
                "url_creation": (
                    f"{self.rate_limit.url_creation_max}/"
                    f"{self.rate_limit.url_creation_window_minutes}min"
                ),
                "default": (
                    "unlimited"
                    if self.rate_limit.default_max is None
                    else f"{self.rate_limit.default_max}/{self.rate_limit.default_window_minutes}min"
                ),
            },
            "store_timeout_seconds": str(self.store.timeout_seconds),
            "store_max_retries": str(self.store.max_retries),
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
