"""Loading of server configurations and firewall rules from YAML files.

All file operations enforce a size limit, and input is validated with the
pydantic models at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import TypeAdapter, ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import DesiredServerConfig, FirewallRule

logger = logging.getLogger(__name__)

_RULE_LIST = TypeAdapter(list[FirewallRule])


class SpecLoadError(Exception):
    """Raised when a configuration file cannot be loaded or fails validation."""

    pass


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"File exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def _format_validation_error(path: Path, error: ValidationError) -> SpecLoadError:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return SpecLoadError(f"Validation failed for {path}:\n" + "\n".join(errors))


def load_server_config(path: Path) -> DesiredServerConfig:
    """Load and validate a server configuration.

    Both a flat mapping and a Kubernetes-style document (apiVersion, kind,
    metadata, spec) are accepted; for the latter the `spec` section is used.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    raw_data = _read_yaml(path)
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Server configuration must be a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        raw_data = raw_data.get("spec")
        if not isinstance(raw_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")

    try:
        server_config = DesiredServerConfig.model_validate(raw_data)
    except ValidationError as e:
        raise _format_validation_error(path, e) from e

    logger.info("Loaded server configuration from %s", path)
    return server_config


def load_firewall_rules(path: Path) -> list[FirewallRule]:
    """Load a YAML list of firewall rules (or a mapping with a `rules` list).

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    raw_data = _read_yaml(path)
    if isinstance(raw_data, dict):
        raw_data = raw_data.get("rules")
    if raw_data is None:
        return []
    if not isinstance(raw_data, list):
        raise SpecLoadError(f"Firewall rules must be a YAML list: {path}")

    try:
        return _RULE_LIST.validate_python(raw_data)
    except ValidationError as e:
        raise _format_validation_error(path, e) from e
