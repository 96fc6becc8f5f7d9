"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Aptos NFT Sync application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
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


class RedisSettings(BaseSettings):
    """Redis cache settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    cache_enabled: bool = Field(
        default=True,
        alias="REDIS_CACHE_ENABLED",
        description="Cache image URLs and conversion rates in Redis",
    )
    cache_ttl_seconds: int = Field(
        default=600,
        alias="REDIS_CACHE_TTL_SECONDS",
        description="TTL for cached entries",
        ge=1,
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class AptosSettings(BaseSettings):
    """Aptos indexer API settings."""

    model_config = SettingsConfigDict(env_prefix="APTOS_", extra="ignore")

    indexer_url: str = Field(
        default="https://indexer.mainnet.aptoslabs.com/v1/graphql",
        alias="APTOS_INDEXER_URL",
        description="Aptos indexer GraphQL endpoint",
    )
    request_timeout: float = Field(
        default=30.0,
        alias="APTOS_REQUEST_TIMEOUT",
        description="HTTP request timeout in seconds",
        gt=0,
    )
    requests_per_second: float = Field(
        default=5.0,
        alias="APTOS_REQUESTS_PER_SECOND",
        description="Client-side rate limit for indexer queries",
        gt=0,
    )
    max_retries: int = Field(
        default=0,
        alias="APTOS_MAX_RETRIES",
        description="Retries for transient HTTP failures (0 disables retrying)",
        ge=0,
        le=10,
    )
    retry_base_delay: float = Field(
        default=1.0,
        alias="APTOS_RETRY_BASE_DELAY",
        description="Base delay in seconds, doubled on every retry",
        ge=0,
    )
    ipfs_gateway: str = Field(
        default="https://ipfs.io/ipfs/",
        alias="APTOS_IPFS_GATEWAY",
        description="Gateway prefix used to rewrite ipfs:// URIs",
    )

    @field_validator("indexer_url", "ipfs_gateway")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate endpoint URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Aptos endpoints must be HTTP(S) URLs")
        return v


class QuoteSettings(BaseSettings):
    """Conversion-rate (price quote) API settings."""

    model_config = SettingsConfigDict(env_prefix="QUOTE_", extra="ignore")

    api_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        alias="QUOTE_API_URL",
        description="CoinGecko-compatible quote API base URL",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="QUOTE_API_KEY",
        description="Optional quote API key",
    )
    coin_id: str = Field(
        default="aptos",
        alias="QUOTE_COIN_ID",
        description="Quote API identifier of the chain's native coin",
    )
    fiat_currency: str = Field(
        default="usd",
        alias="QUOTE_FIAT_CURRENCY",
        description="Fiat currency used for usd_floor_price",
    )
    secondary_currency: str = Field(
        default="eth",
        alias="QUOTE_SECONDARY_CURRENCY",
        description="Currency of the secondary stats projection",
    )

    @field_validator("api_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate quote API URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("QUOTE_API_URL must be an HTTP(S) URL")
        return v.rstrip("/")


class SyncSettings(BaseSettings):
    """Reconciliation tuning knobs."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    chain: str = Field(default="aptos", alias="SYNC_CHAIN")
    steady_page_size: int = Field(default=65, alias="SYNC_STEADY_PAGE_SIZE", ge=1, le=1000)
    steady_pages: int = Field(default=1, alias="SYNC_STEADY_PAGES", ge=1, le=20)
    catch_up_page_size: int = Field(default=100, alias="SYNC_CATCH_UP_PAGE_SIZE", ge=1, le=1000)
    catch_up_pages: int = Field(default=2, alias="SYNC_CATCH_UP_PAGES", ge=1, le=20)
    collections_per_page: int = Field(
        default=10,
        alias="SYNC_COLLECTIONS_PER_PAGE",
        description="Collections loaded per cursor page in the listings sync",
        ge=1,
    )
    pages_per_run: int = Field(
        default=2,
        alias="SYNC_PAGES_PER_RUN",
        description="Cursor pages processed per listings sync run",
        ge=1,
    )
    default_start_version: int = Field(
        default=250_000_000,
        alias="SYNC_DEFAULT_START_VERSION",
        description="Watermark used for collections that were never synced",
        ge=0,
    )
    resolve_concurrency: int = Field(
        default=4,
        alias="SYNC_RESOLVE_CONCURRENCY",
        description="Concurrent price resolutions within one collection",
        ge=1,
        le=32,
    )
    stats_activity_limit: int = Field(default=200, alias="SYNC_STATS_ACTIVITY_LIMIT", ge=1)
    discovery_top_n: int = Field(default=5, alias="SYNC_DISCOVERY_TOP_N", ge=1)
    wallet_page_size: int = Field(default=50, alias="SYNC_WALLET_PAGE_SIZE", ge=1, le=500)
    wallet_max_retries: int = Field(
        default=2,
        alias="SYNC_WALLET_MAX_RETRIES",
        description="Retries per wallet ownership page after the first attempt",
        ge=0,
        le=10,
    )
    wallet_retry_base_delay: float = Field(
        default=1.0,
        alias="SYNC_WALLET_RETRY_BASE_DELAY",
        description="Backoff before the first wallet page retry, doubled per retry",
        ge=0,
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from aptos_nft_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.steady_page_size)
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
    aptos: AptosSettings = Field(default_factory=AptosSettings)
    quotes: QuoteSettings = Field(default_factory=QuoteSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    health_port: int = Field(
        default=8080,
        alias="HEALTH_PORT",
        description="HTTP port for health and metrics endpoints",
        ge=1,
        le=65535,
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run jobs but roll back every write",
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
            "redis_cache_enabled": str(self.redis.cache_enabled),
            "aptos": {
                "indexer_url": self.aptos.indexer_url,
                "max_retries": str(self.aptos.max_retries),
                "requests_per_second": str(self.aptos.requests_per_second),
            },
            "quotes": {
                "api_url": self.quotes.api_url,
                "api_key": "(set)" if self.quotes.api_key else "(not set)",
                "coin_id": self.quotes.coin_id,
            },
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
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
