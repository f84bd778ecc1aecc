"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
balance sync service, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    password: SecretStr | None = Field(
        default=None,
        alias="REDIS_PASSWORD",
        description="Redis password (overrides any password in REDIS_URL)",
    )
    db: int = Field(
        default=0,
        alias="REDIS_DB",
        ge=0,
        le=15,
        description="Redis logical database index",
    )
    connect_timeout_seconds: float = Field(
        default=5.0,
        alias="REDIS_CONNECT_TIMEOUT_SECONDS",
        gt=0,
        le=60,
        description="Socket connect timeout for the Redis client",
    )
    recovery_interval_seconds: float = Field(
        default=30.0,
        alias="REDIS_RECOVERY_INTERVAL_SECONDS",
        ge=0,
        le=3600,
        description="How often a disconnected store re-probes the server",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ExplorerSettings(BaseSettings):
    """Block explorer (AzoreScan) HTTP API settings."""

    model_config = SettingsConfigDict(env_prefix="EXPLORER_", extra="ignore")

    mainnet_url: str = Field(
        default="https://azorescan.com/api",
        alias="EXPLORER_MAINNET_URL",
        description="Explorer API base URL for mainnet",
    )
    testnet_url: str = Field(
        default="https://floripa.azorescan.com/api",
        alias="EXPLORER_TESTNET_URL",
        description="Explorer API base URL for testnet",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="EXPLORER_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="Per-request timeout for explorer calls",
    )
    max_retries: int = Field(
        default=2,
        alias="EXPLORER_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries on transport failures (exponential backoff)",
    )
    retry_delay_seconds: float = Field(
        default=0.5,
        alias="EXPLORER_RETRY_DELAY_SECONDS",
        ge=0,
        le=30,
        description="Initial delay between retries",
    )
    max_requests_per_second: float = Field(
        default=5.0,
        alias="EXPLORER_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side rate limit for explorer calls",
    )

    @field_validator("mainnet_url", "testnet_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate explorer URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Explorer URL must be an HTTP(S) endpoint")
        return v


class CacheSettings(BaseSettings):
    """Balance cache settings."""

    model_config = SettingsConfigDict(env_prefix="BALANCE_", extra="ignore")

    ttl_seconds: int = Field(
        default=300,
        alias="BALANCE_CACHE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL of the fast balance tier",
    )
    fallback_ttl_seconds: int | None = Field(
        default=None,
        alias="BALANCE_FALLBACK_TTL_SECONDS",
        ge=1,
        description="TTL of the fallback tier (unset keeps entries until cleared)",
    )
    history_max_entries: int = Field(
        default=100,
        alias="BALANCE_HISTORY_MAX_ENTRIES",
        ge=1,
        le=10_000,
        description="Maximum history entries kept per user and address",
    )
    lookup_timeout_seconds: float = Field(
        default=30.0,
        alias="BALANCE_LOOKUP_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="Overall bound on one upstream balance fetch",
    )
    single_flight: bool = Field(
        default=True,
        alias="BALANCE_SINGLE_FLIGHT",
        description="Collapse concurrent cache misses for the same key into one fetch",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from balance_sync.config import get_settings

        settings = get_settings()
        print(settings.redis.url)
        print(settings.cache.ttl_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    explorer: ExplorerSettings = Field(
        default_factory=lambda: ExplorerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cache: CacheSettings = Field(
        default_factory=lambda: CacheSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    default_network: Literal["mainnet", "testnet"] = Field(
        default="testnet",
        alias="DEFAULT_NETWORK",
        description="Network used when a caller does not name one",
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
            "redis": {
                "url": self._redact_url(self.redis.url),
                "password": "(set)" if self.redis.password else "(not set)",
                "db": str(self.redis.db),
            },
            "explorer": {
                "mainnet_url": self.explorer.mainnet_url,
                "testnet_url": self.explorer.testnet_url,
                "timeout_seconds": str(self.explorer.timeout_seconds),
                "max_retries": str(self.explorer.max_retries),
            },
            "cache": {
                "ttl_seconds": str(self.cache.ttl_seconds),
                "fallback_ttl_seconds": (
                    str(self.cache.fallback_ttl_seconds)
                    if self.cache.fallback_ttl_seconds is not None
                    else "(no expiry)"
                ),
                "history_max_entries": str(self.cache.history_max_entries),
                "single_flight": str(self.cache.single_flight),
            },
            "log_level": self.log_level,
            "default_network": self.default_network,
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
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
