"""
Tests for verifier configuration.
"""

import pytest

from iap_receipt.config import ConfigurationError, Settings, get_settings, settings


class TestSettings:
    """Tests for Settings loading and fail-fast validation."""

    def test_loaded_from_environment(self):
        """IAP_* environment variables populate the global settings."""
        assert settings.bundle_id == "com.example.app"
        assert settings.bundle_version == "1.0"
        assert settings.environment == "debug"

    def test_get_settings(self):
        """get_settings returns the global instance."""
        assert get_settings() is settings

    def test_env_override(self, monkeypatch):
        """Environment variables are read case-insensitively with the IAP_ prefix."""
        monkeypatch.setenv("IAP_LOCAL_VALIDATION_ENABLED", "false")
        monkeypatch.setenv("iap_log_format", "console")

        loaded = Settings()

        assert loaded.local_validation_enabled is False
        assert loaded.log_format == "console"

    def test_missing_bundle_id(self, monkeypatch):
        """An empty bundle id refuses to start."""
        monkeypatch.setenv("IAP_BUNDLE_ID", "")

        with pytest.raises(ConfigurationError, match="IAP_BUNDLE_ID"):
            Settings()

    def test_missing_bundle_version(self, monkeypatch):
        """An empty bundle version refuses to start."""
        monkeypatch.setenv("IAP_BUNDLE_VERSION", "")

        with pytest.raises(ConfigurationError, match="IAP_BUNDLE_VERSION"):
            Settings()

    def test_unknown_environment(self):
        """Only known environments are accepted."""
        with pytest.raises(ConfigurationError, match="IAP_ENVIRONMENT"):
            Settings(environment="staging")

    def test_all_errors_reported(self, monkeypatch):
        """Every problem is listed at once."""
        monkeypatch.setenv("IAP_BUNDLE_ID", "")
        monkeypatch.setenv("IAP_BUNDLE_VERSION", "")

        with pytest.raises(ConfigurationError) as exc_info:
            Settings(environment="staging")

        message = str(exc_info.value)
        assert "IAP_BUNDLE_ID" in message
        assert "IAP_BUNDLE_VERSION" in message
        assert "IAP_ENVIRONMENT" in message


class TestEnvironmentPolicy:
    """Tests for the environment-derived properties."""

    def test_production(self):
        """Production requires the chain and trusts the vendor root."""
        loaded = Settings(environment="production")

        assert loaded.is_production is True
        assert loaded.chain_verification_required is True
        assert loaded.root_certificate_path == loaded.production_root_certificate_path

    @pytest.mark.parametrize("environment", ["sandbox", "debug", "DEBUG"])
    def test_non_production(self, environment):
        """Other environments trust the test certificate without chain checks."""
        loaded = Settings(environment=environment)

        assert loaded.is_production is False
        assert loaded.chain_verification_required is False
        assert loaded.root_certificate_path == loaded.test_certificate_path
