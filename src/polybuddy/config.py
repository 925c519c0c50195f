"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
PolyBuddy service, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v

    @property
    def async_url(self) -> str:
        """URL with an async driver, as required by the async engine."""
        if self.url.startswith("postgresql://"):
            return "postgresql+asyncpg://" + self.url[len("postgresql://") :]
        return self.url


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string used for job locks",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class PolymarketSettings(BaseSettings):
    """Polymarket Gamma API settings."""

    model_config = SettingsConfigDict(env_prefix="POLYMARKET_")

    gamma_url: str = Field(
        default="https://gamma-api.polymarket.com",
        alias="POLYMARKET_GAMMA_URL",
        description="Polymarket Gamma REST API base URL",
    )
    requests_per_second: float = Field(
        default=5.0,
        alias="POLYMARKET_REQUESTS_PER_SECOND",
        gt=0,
    )

    @field_validator("gamma_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate API URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Gamma API URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class KalshiSettings(BaseSettings):
    """Kalshi API settings for cross-platform prices."""

    model_config = SettingsConfigDict(env_prefix="KALSHI_")

    enabled: bool = Field(
        default=False,
        alias="KALSHI_ENABLED",
        description="Refresh linked Kalshi markets during sync",
    )
    api_url: str = Field(
        default="https://api.elections.kalshi.com/trade-api/v2",
        alias="KALSHI_API_URL",
    )

    @field_validator("api_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate API URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Kalshi API URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class TelegramSettings(BaseSettings):
    """Telegram bot settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="TELEGRAM_BOT_TOKEN",
        description="Telegram bot token",
    )
    bot_username: str = Field(
        default="PolyBuddyBot",
        alias="TELEGRAM_BOT_USERNAME",
    )
    rate_limit_per_minute: int = Field(
        default=20,
        alias="TELEGRAM_RATE_LIMIT_PER_MINUTE",
        ge=1,
    )

    @property
    def enabled(self) -> bool:
        """Check if the Telegram bot is configured."""
        return self.bot_token is not None


class SyncSettings(BaseSettings):
    """Snapshot sync job settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    interval_seconds: int = Field(
        default=900,
        alias="SYNC_INTERVAL_SECONDS",
        ge=10,
        description="Interval between sync passes (default: 15 minutes)",
    )
    max_concurrency: int = Field(
        default=8,
        alias="SYNC_MAX_CONCURRENCY",
        ge=1,
        description="Maximum concurrent per-market fetches",
    )
    retention_days: int = Field(
        default=7,
        alias="SNAPSHOT_RETENTION_DAYS",
        ge=1,
    )


class AlertSettings(BaseSettings):
    """Alert delivery settings."""

    model_config = SettingsConfigDict(env_prefix="ALERT_")

    max_attempts: int = Field(default=3, alias="ALERT_MAX_ATTEMPTS", ge=1)
    retry_base_delay: float = Field(default=1.0, alias="ALERT_RETRY_BASE_DELAY", ge=0)
    max_concurrent_deliveries: int = Field(
        default=4,
        alias="ALERT_MAX_CONCURRENT_DELIVERIES",
        ge=1,
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files.

    Example:
        ```python
        from polybuddy.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.interval_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    polymarket: PolymarketSettings = Field(default_factory=PolymarketSettings)
    kalshi: KalshiSettings = Field(default_factory=KalshiSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)

    web_app_url: str = Field(
        default="http://localhost:3000",
        alias="WEB_APP_URL",
        description="Base URL used for market links in alerts",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    health_port: int = Field(
        default=8080,
        alias="HEALTH_PORT",
        description="HTTP port for health check endpoints",
        ge=1,
        le=65535,
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run without sending Telegram messages",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "gamma_url": self.polymarket.gamma_url,
            "kalshi_enabled": str(self.kalshi.enabled),
            "telegram_enabled": str(self.telegram.enabled),
            "sync_interval_seconds": str(self.sync.interval_seconds),
            "log_level": self.log_level,
            "health_port": str(self.health_port),
            "dry_run": str(self.dry_run),
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

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call reloads the environment."""
    get_settings.cache_clear()
