"""
Configuration file loader for ADAPT-Remediate.

Supports loading configuration from YAML and TOML files with environment variable
overrides and a standard search path.

File layout (YAML shown; TOML uses the same tables):

    pipeline:
      max_concurrent: 5
      max_retries: 3
      try_next_candidate: true
    timeouts:
      command: 120
      validation: 60
    backup:
      dir: .remediation-backups
      retention: 100
    deployment:
      strategy: staged
      stages: [10, 50, 100]
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .exceptions import InvalidConfigError, MissingConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "ADAPT_REMEDIATE_"

CONFIG_FILE_NAMES = ("adapt-remediate.yaml", "adapt-remediate.yml", "adapt-remediate.toml")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_stages(value: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in value.split(",") if part.strip())


# section -> {file key: (config field, env parser or None when not settable from env)}
FIELD_MAP: Dict[str, Dict[str, Tuple[str, Optional[Callable[[str], Any]]]]] = {
    "pipeline": {
        "max_concurrent": ("max_concurrent", int),
        "max_retries": ("max_retries", int),
        "try_next_candidate": ("try_next_candidate", _parse_bool),
        "dry_run": ("dry_run", _parse_bool),
        "require_approval": ("require_approval", _parse_bool),
        "auto_approve": ("auto_approve", _parse_bool),
        "catalog": ("catalog_path", str),
        "include_default_patterns": ("include_default_patterns", _parse_bool),
        "insertion_policy": ("insertion_policy", str),
        "config_target": ("config_target", str),
        "base_dir": ("base_dir", str),
        "ingestion_rules": ("ingestion_rules", None),
    },
    "timeouts": {
        "command": ("command_timeout", int),
        "validation": ("validation_timeout", int),
        "approval": ("approval_timeout", int),
        "deploy": ("deploy_timeout", int),
    },
    "backup": {
        "dir": ("backup_dir", str),
        "retention": ("backup_retention", int),
    },
    "validation": {
        "command": ("validation_command", str),
    },
    "deployment": {
        "strategy": ("deploy_strategy", str),
        "stages": ("deploy_stages", _parse_stages),
        "stage_pause": ("stage_pause", float),
        "canary_soak": ("canary_soak", float),
        "build_command": ("build_command", str),
        "deploy_command": ("deploy_command", str),
        "canary_command": ("canary_command", str),
        "promote_command": ("promote_command", str),
        "rollback_command": ("rollback_command", str),
        "health_check_url": ("health_check_url", str),
        "health_check_command": ("health_check_command", str),
    },
    "state": {
        "db": ("state_db", str),
    },
    "audit": {
        "file": ("audit_file", str),
    },
    "notifications": {
        "slack_webhook_url": ("slack_webhook_url", str),
        "webhook_url": ("webhook_url", str),
        "webhook_token": ("webhook_token", str),
    },
    "logging": {
        "level": ("log_level", str),
        "file": ("log_file", str),
        "json": ("json_logs", _parse_bool),
    },
}


def env_var_name(field_name: str) -> str:
    """Environment variable that overrides a config field."""
    return f"{ENV_PREFIX}{field_name.upper()}"


def _read_yaml(path: Path) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f)


def _read_toml(path: Path) -> Any:
    with open(path, 'rb') as f:
        return tomllib.load(f)


READERS: Dict[str, Tuple[Callable[[Path], Any], Tuple[type, ...]]] = {
    ".yaml": (_read_yaml, (yaml.YAMLError,)),
    ".yml": (_read_yaml, (yaml.YAMLError,)),
    ".toml": (_read_toml, (tomllib.TOMLDecodeError,)),
}


def load_config_file(path: str) -> dict:
    """
    Parse a YAML or TOML config file, chosen by extension.

    An empty YAML document yields ``{}``.

    Raises:
        MissingConfigError: If the file does not exist
        InvalidConfigError: On an unknown extension, a parse error, or a
            top level that is not a mapping
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()

    if suffix not in READERS:
        raise InvalidConfigError(
            f"Unsupported config file format '{suffix}' for {file_path}; "
            f"use one of {', '.join(READERS)}"
        )
    if not file_path.is_file():
        raise MissingConfigError(f"Config file not found: {file_path}")

    reader, parse_errors = READERS[suffix]
    try:
        data = reader(file_path)
    except parse_errors as e:
        raise InvalidConfigError(f"Cannot parse {file_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidConfigError(f"Config file {file_path} must contain a mapping")
    return data


def find_config_file() -> Optional[Path]:
    """
    First existing ``adapt-remediate.{yaml,yml,toml}`` in the working
    directory, then as a dotfile in the home directory, then under /etc.
    """
    directories = [(Path.cwd(), ""), (Path.home(), "."), (Path("/etc"), "")]
    for directory, prefix in directories:
        for name in CONFIG_FILE_NAMES:
            candidate = directory / f"{prefix}{name}"
            if candidate.is_file():
                logger.info(f"Using configuration file {candidate}")
                return candidate

    logger.debug("No configuration file in the search path")
    return None


def get_env_config() -> dict:
    """
    Collect ADAPT_REMEDIATE_* variables into the sectioned file layout.

    Values that fail to parse are logged and dropped.
    """
    config: Dict[str, Dict[str, Any]] = {}

    for section, keys in FIELD_MAP.items():
        for key, (field_name, parser) in keys.items():
            name = env_var_name(field_name)
            raw = os.environ.get(name)
            if parser is None or not raw:
                continue
            try:
                config.setdefault(section, {})[key] = parser(raw)
            except ValueError:
                logger.warning(f"Ignoring {name}={raw!r}: not a valid {field_name}")

    return {section: values for section, values in config.items() if values}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def flatten_config(config: dict) -> dict:
    """
    Map ``section.key`` entries onto RemediationConfig field names.

    Unknown sections and keys are logged and skipped.
    """
    fields: Dict[str, Any] = {}

    for section, values in config.items():
        keys = FIELD_MAP.get(section)
        if keys is None or not isinstance(values, dict):
            logger.warning(f"Ignoring unknown config section '{section}'")
            continue
        for key, value in values.items():
            if key not in keys:
                logger.warning(f"Ignoring unknown config key '{section}.{key}'")
                continue
            field_name = keys[key][0]
            if field_name == "deploy_stages" and isinstance(value, list):
                value = tuple(value)
            fields[field_name] = value

    return fields


def load_config_with_overrides(config_path: Optional[str] = None) -> dict:
    """
    Read the config file (explicit or found on the search path) and apply
    environment overrides on top.

    Returns:
        RemediationConfig keyword arguments

    Raises:
        MissingConfigError: If an explicit ``config_path`` does not exist
        InvalidConfigError: If the file cannot be parsed
    """
    path = Path(config_path) if config_path else find_config_file()
    file_config = load_config_file(str(path)) if path else {}
    if path:
        logger.info(f"Loaded configuration from {path}")

    env_config = get_env_config()
    if env_config:
        logger.info(f"Environment overrides for: {', '.join(sorted(env_config))}")

    return flatten_config(deep_merge(file_config, env_config))
