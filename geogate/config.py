"""YAML + environment variable configuration loading.

Config file: config/geogate.yaml (or $GEOGATE_CONFIG)
Env var override prefix: GEOGATE_
Nesting convention: double underscore (e.g. GEOGATE_RATE_LIMIT__CAPACITY)
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from geogate.errors import ConfigError

_DEFAULT_CONFIG_PATH = Path("config/geogate.yaml")

_DEFAULTS: dict[str, Any] = {
    "server": {
        "port": 8000,
    },
    "http": {
        "trust_proxy": False,
    },
    "geo": {
        "database_type": "csv",
        "path": "data/geo.csv",
        "reload_interval_seconds": 30,
    },
    "rate_limit": {
        "refill_rate_per_second": 10,
        "capacity": 10,
    },
    "logging": {
        "level": "INFO",
    },
}

ENV_PREFIX = "GEOGATE_"
CONFIG_PATH_ENV = "GEOGATE_CONFIG"


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base, recursively for nested dicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _coerce_value(value: str) -> int | float | bool | str:
    """Attempt to coerce a string env var value to a typed value."""
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _apply_env_overrides(config: dict) -> dict:
    """Apply GEOGATE_ prefixed environment variables as overrides.

    Double underscore separates nesting levels:
        GEOGATE_GEO__PATH=/data/geo.csv -> config["geo"]["path"] = "/data/geo.csv"
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_PATH_ENV:
            continue
        parts = key[len(ENV_PREFIX) :].lower().split("__")
        target = config
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = _coerce_value(value)
    return config


def _resolve_path(config_path: Path | None) -> Path:
    if config_path is not None:
        return config_path
    env_path = os.environ.get(CONFIG_PATH_ENV)
    return Path(env_path) if env_path else _DEFAULT_CONFIG_PATH


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(file_config, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")
    return file_config


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load configuration from YAML file with env var overrides.

    The file is ``config_path``, else ``$GEOGATE_CONFIG``, else
    config/geogate.yaml; a missing file means defaults only.
    Precedence (highest wins): env vars > YAML file > defaults.
    """
    config = copy.deepcopy(_DEFAULTS)

    path = _resolve_path(config_path)
    if path.exists():
        config = _deep_merge(config, _read_yaml(path))

    return _apply_env_overrides(config)
