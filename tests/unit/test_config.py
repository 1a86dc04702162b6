"""Unit tests for settings and logging setup."""

import json
import logging

import pytest
import structlog


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, settings):
        assert settings.storage_backend == "memory"
        assert settings.delivery_history_limit == 100
        assert settings.auto_suspend_threshold == 10
        assert settings.auto_suspend_seconds == 3600
        assert settings.is_production is False

    def test_env_prefix(self, monkeypatch):
        from serenity_core.config import Settings

        monkeypatch.setenv("WEBHOOK_STORAGE_BACKEND", "REDIS")
        monkeypatch.setenv("WEBHOOK_MAX_CONCURRENT_DELIVERIES", "8")
        monkeypatch.setenv("WEBHOOK_ENVIRONMENT", "production")

        settings = Settings(_env_file=None)

        assert settings.storage_backend == "redis"
        assert settings.max_concurrent_deliveries == 8
        assert settings.is_production is True

    @pytest.mark.parametrize(
        "field,value",
        [
            ("storage_backend", "postgres"),
            ("log_format", "xml"),
            ("sweep_interval_seconds", 0),
            ("max_concurrent_deliveries", -1),
        ],
    )
    def test_rejects_invalid_values(self, field, value):
        from pydantic import ValidationError

        from serenity_core.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


class TestLogging:
    """Tests for structlog configuration."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers = root.handlers[:]
        level = root.level
        yield
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_output(self, capsys):
        from serenity_core.core.logging import setup_logging

        setup_logging(level="info", fmt="json", service_name="webhook-engine")
        structlog.get_logger("serenity_core.test").info(
            "delivery_succeeded",
            subscription_id="whk_1",
        )

        lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
        entry = lines[-1]
        assert entry["event"] == "delivery_succeeded"
        assert entry["subscription_id"] == "whk_1"
        assert entry["service"] == "webhook-engine"
        assert entry["level"] == "info"
        assert "timestamp" in entry

    def test_level_filtering(self, capsys):
        from serenity_core.core.logging import setup_logging

        setup_logging(level="warning", fmt="json")
        log = structlog.get_logger("serenity_core.test")
        log.info("hidden")
        log.warning("shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out
