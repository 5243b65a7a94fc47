"""Tests for configuration loading."""

import logging

import pytest
from pydantic import ValidationError

from erc20_transfer_indexer.config import (
    DatabaseSettings,
    IndexerSettings,
    RedisSettings,
    Settings,
    clear_settings_cache,
    get_settings,
)

TOKEN = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

ENV_VARS = (
    "DATABASE_URL",
    "REDIS_URL",
    "RPC_URL",
    "FALLBACK_RPC_URL",
    "TOKEN_CONTRACT_ADDRESS",
    "START_BLOCK",
    "BATCH_SIZE",
    "INDEXING_INTERVAL_SECONDS",
    "API_PORT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the process environment and any local .env file."""
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.database.url == "sqlite+aiosqlite:///./transfers.db"
        assert settings.redis.url is None
        assert settings.chain.rpc_url is None
        assert settings.indexer.token_address is None
        assert settings.indexer.start_block == 0
        assert settings.indexer.batch_size == 1000
        assert settings.indexer.batch_delay_seconds == 0.1
        assert settings.indexer.reconcile_interval_seconds == 30.0
        assert settings.api.port == 3001
        assert settings.api.max_limit == 1000
        assert settings.get_logging_level() == logging.INFO


class TestEnvironment:
    """Tests for environment variable loading."""

    def test_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("RPC_URL", "https://rpc.example.org")
        monkeypatch.setenv("TOKEN_CONTRACT_ADDRESS", TOKEN)
        monkeypatch.setenv("START_BLOCK", "1234")
        monkeypatch.setenv("API_PORT", "8080")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings()

        assert settings.chain.rpc_url == "https://rpc.example.org"
        assert settings.indexer.token_address == TOKEN.lower()
        assert settings.indexer.start_block == 1234
        assert settings.api.port == 8080
        assert settings.get_logging_level() == logging.DEBUG

    def test_reads_env_file(self, tmp_path) -> None:
        (tmp_path / ".env").write_text(f"TOKEN_CONTRACT_ADDRESS={TOKEN}\nBATCH_SIZE=250\n")

        settings = Settings()

        assert settings.indexer.token_address == TOKEN.lower()
        assert settings.indexer.batch_size == 250

    def test_get_settings_is_cached(self, monkeypatch) -> None:
        first = get_settings()
        monkeypatch.setenv("START_BLOCK", "99")
        assert get_settings() is first

        clear_settings_cache()
        assert get_settings().indexer.start_block == 99


class TestValidation:
    """Tests for field validation."""

    def test_rejects_malformed_token_address(self, monkeypatch) -> None:
        monkeypatch.setenv("TOKEN_CONTRACT_ADDRESS", "0x1234")
        with pytest.raises(ValidationError):
            IndexerSettings()

    def test_empty_token_address_is_unset(self, monkeypatch) -> None:
        monkeypatch.setenv("TOKEN_CONTRACT_ADDRESS", "")
        assert IndexerSettings().token_address is None

    def test_rejects_unsupported_database(self, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "mysql://localhost/db")
        with pytest.raises(ValidationError):
            DatabaseSettings()

    def test_rejects_bad_redis_scheme(self, monkeypatch) -> None:
        monkeypatch.setenv("REDIS_URL", "http://localhost:6379")
        with pytest.raises(ValidationError):
            RedisSettings()

    def test_rejects_zero_batch_size(self, monkeypatch) -> None:
        monkeypatch.setenv("BATCH_SIZE", "0")
        with pytest.raises(ValidationError):
            IndexerSettings()


class TestRequirements:
    """Tests for command-specific requirements."""

    def test_run_requires_token_address(self, monkeypatch) -> None:
        monkeypatch.setenv("RPC_URL", "https://rpc.example.org")
        with pytest.raises(ValueError, match="TOKEN_CONTRACT_ADDRESS is required"):
            Settings().validate_requirements(command="run")

    def test_backfill_requires_rpc_url(self, monkeypatch) -> None:
        monkeypatch.setenv("TOKEN_CONTRACT_ADDRESS", TOKEN)
        with pytest.raises(ValueError, match="RPC_URL is required"):
            Settings().validate_requirements(command="backfill")

    def test_serve_and_status_need_nothing(self) -> None:
        settings = Settings()
        settings.validate_requirements(command="serve")
        settings.validate_requirements(command="status")


class TestRedaction:
    """Tests for redacted_summary."""

    def test_masks_database_password(self, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://indexer:s3cret@db:5432/transfers")

        summary = Settings().redacted_summary()

        assert summary["database_url"] == "postgresql+asyncpg://indexer:***@db:5432/transfers"
        assert "s3cret" not in str(summary)
