"""Tests for configuration management.

Tests cover:
- Loading configuration from environment variables
- Validation of queue and logging settings
- Production environment constraints
- Settings cache behavior
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from taskflow.core.config import (
    AdminSettings,
    ConfigValidationError,
    Environment,
    QueueSettings,
    Settings,
    validate_settings,
)
from taskflow.core.settings import clear_settings_cache, get_settings, get_settings_safe


@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestDefaults:
    """Defaults without any environment."""

    def test_default_settings(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEV
        assert settings.is_development
        assert not settings.is_production
        assert settings.queue.max_attempts == 3
        assert settings.queue.keep_completed == 10
        assert settings.queue.keep_failed == 5
        assert settings.cache.session_ttl == 86400
        assert settings.api_port == 8000

    def test_worker_serves_all_queues_by_default(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.worker.queues == []


class TestEnvironmentLoading:
    """Loading values from TASKFLOW_ variables."""

    def test_nested_values_from_env(self):
        env = {
            "TASKFLOW_ENVIRONMENT": "staging",
            "TASKFLOW_QUEUE__MAX_ATTEMPTS": "5",
            "TASKFLOW_QUEUE__BACKOFF_STRATEGY": "FIXED",
            "TASKFLOW_REDIS__ENABLED": "false",
            "TASKFLOW_CACHE__ENTITY_TTL": "600",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings(_env_file=None)

        assert settings.environment == Environment.STAGING
        assert settings.queue.max_attempts == 5
        assert settings.queue.backoff_strategy == "fixed"
        assert settings.redis.enabled is False
        assert settings.cache.entity_ttl == 600

    def test_log_level_is_normalized(self):
        with patch.dict(os.environ, {"TASKFLOW_LOG_LEVEL": "debug"}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.log_level == "DEBUG"


class TestValidation:
    """Rejection of invalid values."""

    def test_unknown_backoff_strategy(self):
        with pytest.raises(ValidationError, match="Backoff strategy"):
            QueueSettings(backoff_strategy="linear")

    def test_non_positive_concurrency_override(self):
        with pytest.raises(ValidationError, match="Concurrency"):
            QueueSettings(concurrency={"analytics": 0})

    def test_max_attempts_lower_bound(self):
        with pytest.raises(ValidationError):
            QueueSettings(max_attempts=0)

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError, match="Unknown log level"):
            Settings(log_level="chatty")

    def test_backoff_max_below_base(self):
        settings = Settings(
            queue=QueueSettings(backoff_base_seconds=10.0, backoff_max_seconds=5.0)
        )
        with pytest.raises(ConfigValidationError) as exc_info:
            validate_settings(settings)
        assert exc_info.value.field == "queue.backoff_max_seconds"


class TestProductionConstraints:
    """Constraints enforced when environment is production."""

    def test_debug_rejected_in_production(self):
        with pytest.raises(ValidationError, match="Debug mode"):
            Settings(
                environment="production",
                debug=True,
                admin=AdminSettings(password="a-real-secret"),
            )

    def test_default_admin_password_rejected_in_production(self):
        with pytest.raises(ValidationError, match="default admin password"):
            Settings(environment="production")

    def test_production_with_custom_password(self):
        settings = Settings(
            environment="production",
            admin=AdminSettings(password="a-real-secret"),
        )
        assert settings.is_production


class TestSettingsCache:
    """get_settings() caching."""

    def test_settings_are_cached(self):
        with patch.dict(os.environ, {"TASKFLOW_REDIS__ENABLED": "false"}, clear=True):
            first = get_settings()
            second = get_settings()

        assert first is second

    def test_invalid_environment_exits(self):
        with patch.dict(os.environ, {"TASKFLOW_QUEUE__MAX_ATTEMPTS": "0"}, clear=True):
            with pytest.raises(SystemExit):
                get_settings()

    def test_safe_accessor_returns_none(self):
        with patch.dict(os.environ, {"TASKFLOW_QUEUE__MAX_ATTEMPTS": "0"}, clear=True):
            assert get_settings_safe() is None

    def test_config_snapshot_has_no_secrets(self):
        settings = Settings(admin=AdminSettings(password="a-real-secret"))
        snapshot = settings.get_config_snapshot()

        assert "a-real-secret" not in str(snapshot)
        assert snapshot["queue"]["max_attempts"] == settings.queue.max_attempts
