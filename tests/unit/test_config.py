"""Test cases for configuration management."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError


class TestSettings:
    """Test Settings class configuration loading."""

    def test_settings_loads_defaults(self):
        """Test that settings loads with default values."""
        from parkchain.core.config import Settings

        settings = Settings()

        assert settings.app_name == "parkchain-realtime"
        assert settings.debug is False
        assert settings.api_v1_prefix == "/api/v1"
        assert settings.ws_heartbeat_interval == 30.0
        assert settings.ws_ping_interval == 20.0
        assert settings.ws_ping_timeout == 20.0
        assert settings.port == 8000
        assert settings.log_level == "INFO"

    def test_settings_environment_override(self):
        """Test that environment variables override defaults."""
        with patch.dict(
            os.environ,
            {"DEBUG": "true", "APP_NAME": "test-app", "WS_HEARTBEAT_INTERVAL": "5"},
        ):
            from parkchain.core.config import Settings

            settings = Settings()

            assert settings.debug is True
            assert settings.app_name == "test-app"
            assert settings.ws_heartbeat_interval == 5.0

    def test_allowed_origins_from_env(self):
        """Test list settings are parsed from JSON."""
        with patch.dict(os.environ, {"ALLOWED_ORIGINS": '["https://parkchain.io"]'}):
            from parkchain.core.config import Settings

            settings = Settings()

            assert settings.allowed_origins == ["https://parkchain.io"]

    def test_get_settings_is_cached(self):
        """Test settings are built once."""
        from parkchain.core.config import get_settings

        assert get_settings() is get_settings()


class TestValidation:
    """Test settings validation."""

    def test_heartbeat_interval_must_be_positive(self):
        """Test a zero heartbeat interval is rejected."""
        from parkchain.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(ws_heartbeat_interval=0)

    @pytest.mark.parametrize("field", ["ws_ping_interval", "ws_ping_timeout"])
    def test_ping_settings_must_be_positive(self, field):
        """Test protocol ping settings reject non-positive values."""
        from parkchain.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_log_level_is_normalized(self):
        """Test log level names are upper-cased."""
        from parkchain.core.config import Settings

        settings = Settings(log_level="debug")

        assert settings.log_level == "DEBUG"

    def test_unknown_log_level(self):
        """Test an unknown log level is rejected."""
        from parkchain.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(log_level="chatty")

    def test_environment_must_be_known(self):
        """Test the environment is restricted."""
        from parkchain.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(environment="qa")

        settings = Settings(environment="production")
        assert settings.environment == "production"
