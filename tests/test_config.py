"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from certmagic.config import (
    LETS_ENCRYPT_PRODUCTION,
    LETS_ENCRYPT_STAGING,
    ConfigError,
    load_settings,
)


class TestLoadSettings:
    """Test cases for load_settings."""

    def test_defaults(self):
        """Test an empty environment targets staging."""
        settings = load_settings({})

        assert settings.environment == "staging"
        assert settings.directory_url == LETS_ENCRYPT_STAGING
        assert settings.data_dir == Path(".acme-data")
        assert settings.poll_attempts == 30
        assert settings.pending_order_max_age is None

    def test_production(self):
        """Test the production environment selects the production directory."""
        settings = load_settings({"CERTMAGIC_ENVIRONMENT": "Production"})

        assert settings.directory_url == LETS_ENCRYPT_PRODUCTION

    def test_overrides(self):
        """Test explicit values win over defaults."""
        settings = load_settings({
            "CERTMAGIC_DIRECTORY_URL": "https://localhost:14000/dir",
            "CERTMAGIC_ACCOUNT_EMAIL": "admin@example.com",
            "CERTMAGIC_DATA_DIR": "/var/lib/certmagic",
            "CERTMAGIC_POLL_INTERVAL": "0.5",
            "CERTMAGIC_PENDING_ORDER_MAX_AGE": "86400",
            "CERTMAGIC_LOG_LEVEL": "debug",
        })

        assert settings.directory_url == "https://localhost:14000/dir"
        assert settings.account_email == "admin@example.com"
        assert settings.data_dir == Path("/var/lib/certmagic")
        assert settings.poll_interval == 0.5
        assert settings.pending_order_max_age == 86400
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("env", [
        {"CERTMAGIC_ENVIRONMENT": "qa"},
        {"CERTMAGIC_POLL_ATTEMPTS": "many"},
        {"CERTMAGIC_HTTP_TIMEOUT": "-1"},
        {"CERTMAGIC_LOG_LEVEL": "chatty"},
    ])
    def test_invalid(self, env):
        """Test malformed values raise ConfigError."""
        with pytest.raises(ConfigError):
            load_settings(env)
