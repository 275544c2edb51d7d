"""Tests for itemresearch/core/settings.py."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from itemresearch.core.settings import Settings, get_settings


def test_environment_aliases(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RECOVERY_RESUME_ERRORS", "true")

    settings = Settings()

    assert settings.database_url == "sqlite+pysqlite:///:memory:"
    assert settings.retry_max_attempts == 5
    assert settings.recovery_resume_errors is True


def test_field_names_accepted():
    settings = Settings(database_url="sqlite+pysqlite:///:memory:", worker_count=2)

    assert settings.worker_count == 2
    assert settings.retry_node_count is None


def test_out_of_range_rejected():
    with pytest.raises(ValidationError):
        Settings(database_url="sqlite+pysqlite:///:memory:", completion_threshold=1.5)


def test_get_settings_is_cached(monkeypatch):
    get_settings.cache_clear()
    monkeypatch.setenv("APP_ENV", "test")
    try:
        assert get_settings() is get_settings()
        assert get_settings().app_env == "test"
    finally:
        get_settings.cache_clear()
