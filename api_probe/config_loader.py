"""Config Loader - Loads run options from YAML and merges CLI overrides.

Precedence is CLI flags > config file > Options defaults. Config files are
YAML mappings of Options fields with ${ENV_VAR} substitution, so tokens can
stay out of the file itself.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from api_probe.models import Options


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


CONFIG_DIR_ENV = "API_PROBE_CONFIG_DIR"
CONFIG_FILE_NAME = "config.yaml"

# Keys a config file may set, beyond plain Options fields
_AUTH_SHORTHAND_KEYS = ("bearer_token", "api_key", "api_key_header", "api_key_query", "basic")


def default_config_dir() -> Path:
    """Directory holding config.yaml and history.json."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "api-probe"


def default_config_path() -> Path:
    return default_config_dir() / CONFIG_FILE_NAME


def load_config_file(config_path: Path) -> dict[str, Any]:
    """Load a YAML config mapping with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

    if raw_config is None:
        return {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    return _substitute_env_vars(raw_config)


def save_config(values: dict[str, Any], config_path: Path | None = None) -> Path:
    """Persist a config mapping as YAML. Returns the written path."""
    path = config_path or default_config_path()
    temp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(values, f, sort_keys=False)
        temp_path.replace(path)
    except OSError as e:
        raise ConfigError(f"Failed to write config file {path}: {e}") from e
    return path


def options_from_mapping(raw: dict[str, Any]) -> Options:
    """Validate a mapping of Options fields.

    The auth entry may be a tagged mapping ({"type": "bearer", ...}) or the
    shorthand keys also accepted on the command line (bearer_token, api_key,
    api_key_header, api_key_query, basic).

    Raises:
        ConfigError: If values are invalid or auth settings conflict.
    """
    from api_probe.auth import auth_from_mapping, build_auth

    data = dict(raw)
    shorthand = {key: data.pop(key) for key in _AUTH_SHORTHAND_KEYS if key in data}
    auth_raw = data.pop("auth", None)

    if auth_raw is not None and any(shorthand.values()):
        raise ConfigError("Configure authentication either under 'auth' or with shorthand keys, not both")
    if auth_raw is not None:
        if not isinstance(auth_raw, dict):
            raise ConfigError("'auth' must be a mapping")
        data["auth"] = auth_from_mapping(auth_raw)
    elif shorthand:
        data["auth"] = build_auth(**{k: (str(v) if v else None) for k, v in shorthand.items()})

    try:
        return Options.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid options: {_format_validation_error(e)}") from e


def build_options(
    cli_values: dict[str, Any],
    config_path: Path | None = None,
) -> Options:
    """Merge CLI values over the config file over defaults.

    Args:
        cli_values: Options fields (or auth shorthand keys) given on the
            command line. None values mean "not given".
        config_path: Explicit config file. When None, the default config
            file is used if it exists.

    Raises:
        ConfigError: If the file or the merged values are invalid.
    """
    file_values: dict[str, Any] = {}
    if config_path is not None:
        file_values = load_config_file(config_path)
    else:
        default_path = default_config_path()
        if default_path.exists():
            file_values = load_config_file(default_path)

    given = {k: v for k, v in cli_values.items() if v is not None}
    merged = dict(file_values)
    if any(given.get(k) for k in _AUTH_SHORTHAND_KEYS):
        # Auth from the command line replaces auth from the file entirely
        merged.pop("auth", None)
        for key in _AUTH_SHORTHAND_KEYS:
            merged.pop(key, None)
    merged.update(given)

    if not merged.get("base_url"):
        raise ConfigError("A base URL is required (--base-url or base_url in config)")

    return options_from_mapping(merged)


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "options"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_PATTERN.sub(replacer, s)
