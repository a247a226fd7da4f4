# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for config module."""

import pytest

from saga_db.config import DbConfig, config_from_env

ENV_VARS = (
    "SAGA_DB_URL",
    "SAGA_DB_PREFIX",
    "SAGA_DB_POOL_SIZE",
    "SAGA_DB_CONNECT_TIMEOUT",
    "SAGA_DB_SLOW_QUERY_MS",
    "SAGA_DB_LOG_QUERIES",
    "SAGA_DB_MIGRATIONS",
    "SAGA_DB_VERSION_TABLE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDbConfig:
    """Tests for DbConfig dataclass."""

    def test_default_values(self):
        """Default values should be set correctly."""
        config = DbConfig()
        assert config.url == "/data/saga.db"
        assert config.table_prefix == ""
        assert config.pool_size == 10
        assert config.connect_timeout == 10.0
        assert config.slow_query_ms is None
        assert config.log_queries is False
        assert config.migrations_package is None
        assert config.version_table == "schema_options"

    def test_custom_values(self):
        """Custom values should override defaults."""
        config = DbConfig(url="postgresql://saga@db/saga", table_prefix="saga_", pool_size=4)
        assert config.url == "postgresql://saga@db/saga"
        assert config.table_prefix == "saga_"
        assert config.pool_size == 4


class TestConfigFromEnv:
    """Tests for config_from_env() function."""

    def test_default_values_when_no_env(self):
        """Should use defaults when no env vars set."""
        assert config_from_env() == DbConfig()

    def test_reads_every_variable(self, monkeypatch):
        """Should read all SAGA_DB_* variables."""
        monkeypatch.setenv("SAGA_DB_URL", "/custom/saga.db")
        monkeypatch.setenv("SAGA_DB_PREFIX", "saga_")
        monkeypatch.setenv("SAGA_DB_POOL_SIZE", "3")
        monkeypatch.setenv("SAGA_DB_CONNECT_TIMEOUT", "2.5")
        monkeypatch.setenv("SAGA_DB_SLOW_QUERY_MS", "150")
        monkeypatch.setenv("SAGA_DB_LOG_QUERIES", "yes")
        monkeypatch.setenv("SAGA_DB_MIGRATIONS", "myapp.migrations")
        monkeypatch.setenv("SAGA_DB_VERSION_TABLE", "saga_options")

        config = config_from_env()

        assert config.url == "/custom/saga.db"
        assert config.table_prefix == "saga_"
        assert config.pool_size == 3
        assert config.connect_timeout == 2.5
        assert config.slow_query_ms == 150.0
        assert config.log_queries is True
        assert config.migrations_package == "myapp.migrations"
        assert config.version_table == "saga_options"

    @pytest.mark.parametrize("value", ["1", "true", "TRUE", "yes"])
    def test_log_queries_truthy(self, monkeypatch, value):
        monkeypatch.setenv("SAGA_DB_LOG_QUERIES", value)
        assert config_from_env().log_queries is True

    @pytest.mark.parametrize("value", ["0", "false", "no", ""])
    def test_log_queries_falsy(self, monkeypatch, value):
        monkeypatch.setenv("SAGA_DB_LOG_QUERIES", value)
        assert config_from_env().log_queries is False

    def test_empty_optional_values_are_none(self, monkeypatch):
        """Empty strings disable the optional settings."""
        monkeypatch.setenv("SAGA_DB_SLOW_QUERY_MS", "")
        monkeypatch.setenv("SAGA_DB_MIGRATIONS", "")
        config = config_from_env()
        assert config.slow_query_ms is None
        assert config.migrations_package is None

    def test_invalid_pool_size_raises(self, monkeypatch):
        monkeypatch.setenv("SAGA_DB_POOL_SIZE", "many")
        with pytest.raises(ValueError):
            config_from_env()
