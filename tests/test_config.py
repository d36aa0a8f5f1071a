"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from vdcops.config import (
    DEFAULT_API_URL,
    DEFAULT_MAX_RETRIES,
    Config,
    ConfigurationError,
)

USER_ID = "11111111-2222-3333-4444-555555555555"


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration."""
        config = Config(user_id=USER_ID, api_token="secret")

        assert config.api_url == DEFAULT_API_URL
        assert config.synchronous is True
        assert config.max_retries == DEFAULT_MAX_RETRIES
        assert config.http_client is None

    def test_missing_credentials(self) -> None:
        """Test that both missing credentials are reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(user_id="", api_token="")

        assert "user_id is required" in str(exc_info.value)
        assert "api_token is required" in str(exc_info.value)

    def test_invalid_user_id(self) -> None:
        """Test that a non-UUID user id is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(user_id="not-a-uuid", api_token="secret")

        assert "user_id must be a valid UUID" in str(exc_info.value)

    def test_invalid_api_url(self) -> None:
        """Test that a non-HTTP URL is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(user_id=USER_ID, api_token="secret", api_url="ftp://example.com")

        assert "api_url" in str(exc_info.value)

    def test_invalid_delays(self) -> None:
        """Test delay interval bounds."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(user_id=USER_ID, api_token="secret", delay_interval=0)
        assert "delay_interval must be positive" in str(exc_info.value)

        with pytest.raises(ConfigurationError) as exc_info:
            Config(user_id=USER_ID, api_token="secret", delay_interval=5, max_delay_interval=1)
        assert "max_delay_interval" in str(exc_info.value)

    def test_invalid_max_retries(self) -> None:
        """Test that the retry cap is bounded."""
        with pytest.raises(ConfigurationError):
            Config(user_id=USER_ID, api_token="secret", max_retries=-1)
        with pytest.raises(ConfigurationError):
            Config(user_id=USER_ID, api_token="secret", max_retries=100)

    def test_zero_retries_allowed(self) -> None:
        """Test that retrying can be disabled."""
        config = Config(user_id=USER_ID, api_token="secret", max_retries=0)
        assert config.max_retries == 0

    def test_base_url_strips_trailing_slash(self) -> None:
        """Test base URL normalization."""
        config = Config(user_id=USER_ID, api_token="secret", api_url="https://api.test/")
        assert config.base_url == "https://api.test"

    def test_user_agent(self) -> None:
        """Test that the user agent names product and version."""
        config = Config(user_id=USER_ID, api_token="secret")
        assert config.user_agent.startswith("vdcops/")


class TestConfigFromOptions:
    """Tests for Config.from_options."""

    def test_known_options(self) -> None:
        """Test building from a mapping."""
        config = Config.from_options(
            {"user_id": USER_ID, "api_token": "secret", "synchronous": False}
        )
        assert config.synchronous is False

    def test_unknown_options(self) -> None:
        """Test that unknown keys are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config.from_options({"user_id": USER_ID, "api_token": "secret", "retries": 3})
        assert "retries" in str(exc_info.value)

    def test_incomplete_options(self) -> None:
        """Test that missing required options raise ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config.from_options({"user_id": USER_ID})
        assert "incomplete" in str(exc_info.value)


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_from_env(self) -> None:
        """Test loading configuration from environment."""
        env = {
            "VDC_USER_ID": USER_ID,
            "VDC_API_TOKEN": "secret",
            "VDC_API_URL": "https://api.example.com",
            "VDC_SYNCHRONOUS": "false",
            "VDC_REQUEST_TIMEOUT": "30",
            "VDC_DELAY_INTERVAL": "0.5",
            "VDC_MAX_RETRIES": "2",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.api_url == "https://api.example.com"
        assert config.synchronous is False
        assert config.request_completion_timeout == 30.0
        assert config.delay_interval == 0.5
        assert config.max_retries == 2

    def test_from_env_defaults(self) -> None:
        """Test that unset optional variables use defaults."""
        env = {"VDC_USER_ID": USER_ID, "VDC_API_TOKEN": "secret"}
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.api_url == DEFAULT_API_URL
        assert config.synchronous is True

    def test_from_env_missing_credentials(self) -> None:
        """Test that missing credentials fail validation."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError):
                Config.from_env()

    def test_from_env_invalid_number(self) -> None:
        """Test that a non-numeric timeout is reported by name."""
        env = {"VDC_USER_ID": USER_ID, "VDC_API_TOKEN": "secret", "VDC_MAX_RETRIES": "many"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()
        assert "VDC_MAX_RETRIES" in str(exc_info.value)
