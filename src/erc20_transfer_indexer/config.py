"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
ERC20 transfer indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./transfers.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional block cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string used to cache block headers",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Chain RPC settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=3,
        alias="RPC_MAX_RETRIES",
        ge=1,
        le=20,
        description="Attempts per endpoint before failing over",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class IndexerSettings(BaseSettings):
    """Ingestion pipeline settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    token_address: str | None = Field(
        default=None,
        alias="TOKEN_CONTRACT_ADDRESS",
        description="ERC20 contract whose Transfer events are indexed",
    )
    start_block: int = Field(
        default=0,
        alias="START_BLOCK",
        ge=0,
        description="Genesis block used when the ledger is empty",
    )
    batch_size: int = Field(
        default=1000,
        alias="BATCH_SIZE",
        ge=1,
        le=100_000,
        description="Block range per eth_getLogs request during backfill",
    )
    batch_delay_seconds: float = Field(
        default=0.1,
        alias="BATCH_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between backfill batches",
    )
    reconcile_interval_seconds: float = Field(
        default=30.0,
        alias="INDEXING_INTERVAL_SECONDS",
        ge=1.0,
        le=86_400.0,
        description="How often the reconciliation timer re-runs the backfill",
    )
    watch_poll_interval_seconds: float = Field(
        default=4.0,
        alias="WATCH_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Polling cadence of the live log subscription",
    )
    resubscribe_initial_delay_seconds: float = Field(
        default=1.0,
        alias="RESUBSCRIBE_INITIAL_DELAY_SECONDS",
        gt=0.0,
        le=600.0,
        description="First backoff delay after a subscription error",
    )
    resubscribe_max_delay_seconds: float = Field(
        default=60.0,
        alias="RESUBSCRIBE_MAX_DELAY_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Upper bound for the resubscribe backoff",
    )

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not _ADDRESS_RE.match(v):
            raise ValueError("TOKEN_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v.lower()


class ApiSettings(BaseSettings):
    """HTTP query API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address for the query API",
    )
    port: int = Field(
        default=3001,
        alias="API_PORT",
        ge=1,
        le=65535,
        description="HTTP port for the query API",
    )
    max_limit: int = Field(
        default=1000,
        alias="API_MAX_LIMIT",
        ge=1,
        le=100_000,
        description="Largest page size accepted by the query API",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from erc20_transfer_indexer.config import get_settings

        settings = get_settings()
        print(settings.indexer.token_address)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    api: ApiSettings = Field(
        default_factory=lambda: ApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": "(set)" if self.chain.rpc_url else "(not set)",
                "fallback_rpc_url": "(set)" if self.chain.fallback_rpc_url else "(not set)",
                "max_requests_per_second": str(self.chain.max_requests_per_second),
            },
            "indexer": {
                "token_address": self.indexer.token_address or "(not set)",
                "start_block": str(self.indexer.start_block),
                "batch_size": str(self.indexer.batch_size),
                "reconcile_interval_seconds": str(self.indexer.reconcile_interval_seconds),
            },
            "api": {
                "host": self.api.host,
                "port": str(self.api.port),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "backfill", "serve", "status"]) -> None:
        """Validate command-specific requirements.

        Missing chain configuration is fatal for any command that ingests.
        """
        if command in ("run", "backfill"):
            if not self.indexer.token_address:
                raise ValueError("TOKEN_CONTRACT_ADDRESS is required in environment variables")
            if not self.chain.rpc_url:
                raise ValueError("RPC_URL is required in environment variables")

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
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
