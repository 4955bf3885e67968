"""
Configuration loading and validation.

Config files are JSON.  Any string value may contain ``${ENV_VAR:-default}``
placeholders, resolved after ``.env`` has been loaded into the
environment.  Missing sections and keys fall back to ``DEFAULT_CONFIG``.
"""

import copy
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Union

from dotenv import load_dotenv

from .constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DB_PATH,
    DEFAULT_MAX_CODE_AGE_MS,
    DEFAULT_MAX_TOKEN_AGE_MS,
    DEFAULT_PRUNE_INTERVAL_MS,
    DEFAULT_TRACES_SAMPLE_RATE,
    EVENT_MAX_DEPTH,
    MAX_WALK_DEPTH,
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "filters": {
        "max_depth": EVENT_MAX_DEPTH,
    },
    "pruner": {
        "interval_ms": DEFAULT_PRUNE_INTERVAL_MS,
        "max_token_age_ms": DEFAULT_MAX_TOKEN_AGE_MS,
        "max_code_age_ms": DEFAULT_MAX_CODE_AGE_MS,
        "db_path": DEFAULT_DB_PATH,
    },
    "sentry": {
        "dsn": "${SENTRY_DSN:-}",
        "environment": "${SENTRY_ENVIRONMENT:-}",
        "traces_sample_rate": DEFAULT_TRACES_SAMPLE_RATE,
    },
}

# Keys that must be non-negative integers after loading.
_NON_NEGATIVE_INTS: Dict[str, List[str]] = {
    "pruner": ["interval_ms", "max_token_age_ms", "max_code_age_ms"],
}


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


def load_config(config_path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a JSON file, merge it over the defaults and
    resolve ``${ENV_VAR:-default}`` placeholders in all string values.

    Args:
        config_path: Path to the config file.

    Returns:
        Fully-resolved configuration dictionary.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    load_dotenv()
    full_path = Path(config_path)

    if not full_path.exists():
        raise ConfigError(f"Configuration file not found: {full_path}")

    try:
        with open(full_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {full_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {full_path} must be an object")

    return _resolve(_merge(DEFAULT_CONFIG, raw))


def default_config() -> Dict[str, Any]:
    """Defaults with placeholders resolved against the current environment."""
    load_dotenv()
    return _resolve(copy.deepcopy(DEFAULT_CONFIG))


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a config dict.

    Returns:
        A list of human-readable error strings.  Empty means valid.
    """
    errors: List[str] = []

    for section in DEFAULT_CONFIG:
        if not isinstance(config.get(section), dict):
            errors.append(f"Missing required config section: '{section}'")

    for section, keys in _NON_NEGATIVE_INTS.items():
        for key in keys:
            value = _section(config, section).get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append(f"'{section}.{key}' must be a non-negative integer, got {value!r}")

    max_depth = _section(config, "filters").get("max_depth")
    if not isinstance(max_depth, int) or isinstance(max_depth, bool) or max_depth < 1:
        errors.append(f"'filters.max_depth' must be a positive integer, got {max_depth!r}")
    elif max_depth > MAX_WALK_DEPTH:
        errors.append(f"'filters.max_depth' must be at most {MAX_WALK_DEPTH}, got {max_depth}")

    rate = _section(config, "sentry").get("traces_sample_rate")
    if not isinstance(rate, (int, float)) or not 0.0 <= rate <= 1.0:
        errors.append(f"'sentry.traces_sample_rate' must be between 0 and 1, got {rate!r}")

    return errors


# ── Private helpers ──────────────────────────────────────────────

_PLACEHOLDER_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve(obj: Any) -> Any:
    """Recursively resolve ``${ENV_VAR:-default}`` in string values."""
    if isinstance(obj, str):
        return _PLACEHOLDER_RE.sub(_replace_match, obj)
    elif isinstance(obj, dict):
        return {k: _resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_resolve(v) for v in obj]
    return obj


def _replace_match(m: re.Match) -> str:
    var = m.group(1)
    default = m.group(2) if m.group(2) is not None else ""
    return os.environ.get(var, default)
