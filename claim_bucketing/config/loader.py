"""
Configuration loading for the claim bucketing engine.

A configuration file is optional YAML with these top-level sections, all
of which default when absent:

    database                         connection URL or host/port parts, pool size
    feed                             consumer id, poll interval, batch size,
                                     settled statuses, claim tables
    monitor                          periodic sweep interval, stale bucket age
    release                          release notification backend (log, json_file, noop)
    checkpoint                       database or file checkpoints
    configuration_cache_ttl_seconds  reuse of the rule/threshold snapshot

String values may reference the environment as ${VAR} or ${VAR:-default}.
Settings not given in the file can also be supplied as CLAIM_BUCKETING_*
environment variables, with "__" between nested names, e.g.
CLAIM_BUCKETING_FEED__BATCH_SIZE=250.

Bucketing rules, thresholds and payer/payee records are business data kept
in the database and loaded separately (see config.seed).
"""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from claim_bucketing.config.models import AppConfig

# Searched in order when no path is given
DEFAULT_CONFIG_PATHS = [
    Path("config/claim_bucketing.yaml"),
    Path("claim_bucketing.yaml"),
    Path.home() / ".claim_bucketing" / "config.yaml",
]

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def _substitute_env_vars(value: Any) -> Any:
    """Replace ${VAR} and ${VAR:-default} in every string of a loaded document."""
    if isinstance(value, str):

        def replace(match: re.Match) -> str:
            default = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(match.group(1), default)

        return _ENV_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def find_config_file() -> Optional[Path]:
    """First existing file among DEFAULT_CONFIG_PATHS, or None."""
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_yaml(path: Path) -> dict[str, Any]:
    """
    Read a YAML mapping and substitute environment references.

    An empty file is an empty mapping.

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If the YAML is invalid
        ValueError: If the document is not a mapping of sections
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        return {}
    if not isinstance(raw_config, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping of sections")

    return _substitute_env_vars(raw_config)


def load_config(
    config_path: str | Path | None = None,
    override_values: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Build the engine's AppConfig.

    The service can run on defaults plus CLAIM_BUCKETING_* variables alone,
    so finding no default file is not an error. Values present in the file
    take precedence over those variables; reference ${VAR} in the file to
    defer a value to the environment.

    Args:
        config_path: YAML file to load. If None, DEFAULT_CONFIG_PATHS are
                     searched and the first existing one is used.
        override_values: Section values deep-merged over the file, e.g.
                         {"feed": {"batch_size": 10}}

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        ValidationError: If a section holds invalid values
    """
    path = Path(config_path) if config_path is not None else find_config_file()
    config_dict = load_yaml(path) if path is not None else {}

    if override_values:
        config_dict = _deep_merge(config_dict, override_values)

    return AppConfig(**config_dict)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result
