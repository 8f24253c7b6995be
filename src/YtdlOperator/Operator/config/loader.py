"""
Configuration Loading with File/Env/CLI Precedence

Implements three-level config composition:
1. **File level** (YAML/JSON): base configuration
2. **Environment level**: YTDL_* prefixed variables override file
3. **CLI level**: programmatic overrides win

Environment variables use double-underscore notation:
  YTDL_EXECUTOR__IMAGE="registry/ytdl-executor:v2"  →  executor.image=...
  YTDL_VPN__ENABLED=false  →  vpn.enabled=False

The flat variables the Helm chart sets (``CONCURRENCY``,
``EXECUTOR_SERVICE_ACCOUNT_NAME``) are honoured at environment level and lose
to their ``YTDL_`` spelling when both are present.
``YTDL_CONFIG`` names the config file itself and is not an override.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ...errors import ConfigurationError
from .models import OperatorConfig

_LOGGER = logging.getLogger(__name__)

LEGACY_ENV_KEYS: Mapping[str, str] = {
    "CONCURRENCY": "concurrency",
    "EXECUTOR_SERVICE_ACCOUNT_NAME": "executor.service_account_name",
}


def _read_file(path: str) -> dict[str, Any]:
    """
    Read YAML or JSON config file.

    Args:
        path: File path (suffix determines format: .yaml/.yml or .json)

    Returns:
        Parsed config dictionary

    Raises:
        ConfigurationError: If file cannot be read or parsed
    """
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    suffix = p.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            return yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if suffix == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

    raise ConfigurationError(f"Unsupported file format: {suffix}. Use .yaml or .json")


def _assign_nested(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    """
    Assign value to nested dict using dot notation.

    Example:
        _assign_nested(data, "executor.image", "img")
        → data["executor"]["image"] = "img"
    """
    keys = dotted_key.split(".")
    current = data

    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value


def _coerce_env_value(value: str) -> Any:
    """
    Coerce an environment variable string through JSON, falling back to the raw string.

    Handles lists, dicts, bools, numbers and null; ``"True"``/``"False"``
    are accepted as booleans too.
    """
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        pass

    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    return value


def _merge_env_overrides(
    data: dict[str, Any],
    env_prefix: str = "YTDL_",
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Overlay environment variables onto config dict.

    Legacy flat variables are applied first so the prefixed spelling wins.

    Args:
        data: Base config dict (will be modified)
        env_prefix: Environment variable prefix (default: YTDL_)
        environ: Environment mapping (default: ``os.environ``)

    Returns:
        Modified data dict
    """
    environ = os.environ if environ is None else environ

    for env_key, dotted_key in LEGACY_ENV_KEYS.items():
        if env_key in environ and environ[env_key] != "":
            _assign_nested(data, dotted_key, _coerce_env_value(environ[env_key]))
            _LOGGER.debug(f"Environment override: {env_key} → {dotted_key}")

    for env_key, env_value in environ.items():
        if not env_key.startswith(env_prefix) or env_key == f"{env_prefix}CONFIG":
            continue

        relative_key = env_key[len(env_prefix) :].lower()
        dotted_key = relative_key.replace("__", ".")
        coerced_value = _coerce_env_value(env_value)
        _assign_nested(data, dotted_key, coerced_value)
        _LOGGER.debug(f"Environment override: {env_key} → {dotted_key}")

    return data


def _merge_cli_overrides(
    data: dict[str, Any], cli_overrides: Mapping[str, Any] | None
) -> dict[str, Any]:
    """
    Recursively merge CLI overrides into base config dict.

    Later values win; ``None`` values are ignored so unset CLI options do not
    clobber file or environment settings.
    """
    if not cli_overrides:
        return data

    for key, value in cli_overrides.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            base = data.get(key)
            data[key] = _merge_cli_overrides(base if isinstance(base, dict) else {}, value)
        else:
            data[key] = value
        _LOGGER.debug(f"CLI override: {key} = {value!r}")

    return data


def load_config(
    path: str | None = None,
    env_prefix: str = "YTDL_",
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> OperatorConfig:
    """
    Load OperatorConfig from file, environment, and CLI with proper precedence.

    **Precedence:** file < environment < CLI

    Args:
        path: Path to YAML/JSON config file (optional)
        env_prefix: Environment variable prefix (default: YTDL_)
        cli_overrides: CLI override dict (optional)
        environ: Environment mapping, for tests (default: ``os.environ``)

    Returns:
        Validated OperatorConfig instance

    Raises:
        ConfigurationError: If the file cannot be read or the result is invalid
    """
    data: dict[str, Any] = {}

    if path:
        data = _read_file(path)
        _LOGGER.info(f"Loaded config from {path}")

    data = _merge_env_overrides(data, env_prefix, environ)
    data = _merge_cli_overrides(data, cli_overrides)

    try:
        config = OperatorConfig.model_validate(data)
    except ValidationError as e:
        _LOGGER.error(f"Configuration validation failed: {e}")
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    _LOGGER.debug(f"Configuration validated. Config hash: {config.config_hash()[:8]}...")
    return config


def export_config_schema() -> dict[str, Any]:
    """
    Export JSON Schema for OperatorConfig.

    Returns:
        JSON schema dict (Pydantic v2 format)
    """
    return OperatorConfig.model_json_schema()
