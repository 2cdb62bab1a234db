"""Tests for settings loading and persistence."""

import json

import pytest

from hookrelay.core.settings import (
    SETTINGS_ENV_VAR,
    DispatchingSettings,
    SettingsManager,
    WebhookSettings,
    load_settings,
    settings_file,
)
from hookrelay.webhooks.exceptions import ConfigurationError


class TestSettingsManager:
    """Tests for the JSON-backed settings manager."""

    def test_missing_file_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        settings = SettingsManager(path).get()

        assert settings.dispatching.max_attempts == 3
        assert settings.dispatching.retry_strategy == "exponential"
        assert settings.receiving.signature_header == "X-Webhook-Signature"
        assert settings.circuit_breaker.threshold == 5
        assert settings.storage.retention_days == 30
        assert set(settings.providers) == {"stripe", "github", "shopify", "slack", "paypal"}
        assert not path.exists()

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        manager = SettingsManager(path)
        settings = manager.get()
        settings.dispatching = DispatchingSettings(max_attempts=7)
        manager.save(settings)

        reloaded = SettingsManager(path).get()
        assert reloaded.dispatching.max_attempts == 7
        assert "stripe" in reloaded.providers

    def test_partial_file_fills_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"circuit_breaker": {"threshold": 2}}))

        settings = SettingsManager(path).get()

        assert settings.circuit_breaker.threshold == 2
        assert settings.circuit_breaker.open_duration == 300

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            SettingsManager(path)

    def test_invalid_value_names_key(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"dispatching": {"retry_strategy": "random"}}))

        with pytest.raises(ConfigurationError) as exc_info:
            SettingsManager(path)

        assert exc_info.value.key == "dispatching.retry_strategy"

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.json"
        monkeypatch.setenv(SETTINGS_ENV_VAR, str(path))

        assert settings_file() == path


class TestLoadSettings:
    """Tests for validation of settings values."""

    @pytest.mark.parametrize("data", [
        {"dispatching": {"max_attempts": 0}},
        {"circuit_breaker": {"threshold": 0}},
        {"circuit_breaker": {"backend": "memcached"}},
        {"storage": {"backend": "postgres"}},
        {"receiving": {"signature_validator": "md5"}},
    ])
    def test_rejects_bad_values(self, data):
        with pytest.raises(ConfigurationError):
            load_settings(data)

    def test_assignment_is_validated(self):
        settings = WebhookSettings()
        with pytest.raises(ValueError):
            settings.dispatching = {"retry_strategy": "random"}
