"""Client configuration with validation.

All options are validated at construction time so a misconfigured client
fails before it sends its first request.
"""

from __future__ import annotations

import os
import platform
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

import httpx

from . import __version__


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_URL = "https://api.gridscale.io"
DEFAULT_REQUEST_COMPLETION_TIMEOUT_SECONDS = 120.0
DEFAULT_POWER_STATE_TIMEOUT_SECONDS = 120.0
DEFAULT_DELAY_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_DELAY_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 5
MAX_RETRIES_LIMIT = 20

# Upper bound for server configuration and firewall rule files
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1 MiB

PRODUCT_NAME = "vdcops"

# Input validation patterns
VALID_UUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_API_URL_PATTERN = r"^https?://[^\s/]+"


@dataclass(frozen=True)
class Config:
    """Client configuration.

    The HTTP client and logger built from this configuration are shared by
    every call made through one Client and are never modified afterwards.
    """

    # Required fields
    user_id: str
    api_token: str

    api_url: str = DEFAULT_API_URL

    # Behavior
    synchronous: bool = True

    # Timing
    request_completion_timeout: float = DEFAULT_REQUEST_COMPLETION_TIMEOUT_SECONDS
    power_state_timeout: float = DEFAULT_POWER_STATE_TIMEOUT_SECONDS
    delay_interval: float = DEFAULT_DELAY_INTERVAL_SECONDS
    max_delay_interval: float = DEFAULT_MAX_DELAY_INTERVAL_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES

    # Transport
    http_headers: dict[str, str] = field(default_factory=dict)
    http_client: httpx.AsyncClient | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.user_id:
            errors.append("user_id is required")
        elif not re.match(VALID_UUID_PATTERN, self.user_id.lower()):
            errors.append(f"user_id must be a valid UUID: {self.user_id}")

        if not self.api_token:
            errors.append("api_token is required")

        if not re.match(VALID_API_URL_PATTERN, self.api_url or ""):
            errors.append(f"api_url must be an http(s) URL: {self.api_url}")

        if self.request_completion_timeout <= 0:
            errors.append("request_completion_timeout must be positive")
        if self.power_state_timeout <= 0:
            errors.append("power_state_timeout must be positive")
        if self.delay_interval <= 0:
            errors.append("delay_interval must be positive")
        elif self.max_delay_interval < self.delay_interval:
            errors.append("max_delay_interval must not be lower than delay_interval")

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}")

        for key, value in self.http_headers.items():
            if not isinstance(key, str) or not isinstance(value, str):
                errors.append(f"http_headers entries must be strings: {key!r}")

        if self.http_client is not None and not isinstance(self.http_client, httpx.AsyncClient):
            errors.append("http_client must be an httpx.AsyncClient")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/")

    @property
    def user_agent(self) -> str:
        return f"{PRODUCT_NAME}/{__version__} ({platform.system().lower()})"

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> Config:
        """Build a configuration from a mapping of option names.

        Raises:
            ConfigurationError: On unknown options or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"Configuration has unknown option(s): {unknown}")
        try:
            return cls(**options)
        except TypeError as e:
            raise ConfigurationError(f"Configuration is incomplete: {e}") from e

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VDC_API_URL: Base URL of the API (default: https://api.gridscale.io)
            VDC_USER_ID: UUID of the API user
            VDC_API_TOKEN: API token
            VDC_SYNCHRONOUS: If "false", mutating calls return without waiting
            VDC_REQUEST_TIMEOUT: Request completion timeout in seconds (default: 120)
            VDC_POWER_TIMEOUT: Power state change timeout in seconds (default: 120)
            VDC_DELAY_INTERVAL: Base delay between retries and polls in seconds (default: 1)
            VDC_MAX_RETRIES: Retry cap for retryable errors (default: 5)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            api_url=os.environ.get("VDC_API_URL", DEFAULT_API_URL),
            user_id=os.environ.get("VDC_USER_ID", ""),
            api_token=os.environ.get("VDC_API_TOKEN", ""),
            synchronous=get_bool("VDC_SYNCHRONOUS", True),
            request_completion_timeout=get_float(
                "VDC_REQUEST_TIMEOUT", DEFAULT_REQUEST_COMPLETION_TIMEOUT_SECONDS
            ),
            power_state_timeout=get_float("VDC_POWER_TIMEOUT", DEFAULT_POWER_STATE_TIMEOUT_SECONDS),
            delay_interval=get_float("VDC_DELAY_INTERVAL", DEFAULT_DELAY_INTERVAL_SECONDS),
            max_retries=get_int("VDC_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        )
