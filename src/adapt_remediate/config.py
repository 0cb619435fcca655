"""Configuration management for ADAPT-Remediate.

This module provides configuration loading and validation for the remediation
pipeline. Configuration can be loaded from environment variables, YAML/TOML
files, or direct instantiation.

Classes:
    RemediationConfig: Main configuration dataclass with validation.

Example:
    >>> from adapt_remediate.config import RemediationConfig
    >>>
    >>> # Load from environment variables
    >>> config = RemediationConfig.from_env()
    >>>
    >>> # Load from file with env overrides
    >>> config = RemediationConfig.from_file("adapt-remediate.yaml")
    >>>
    >>> # Recommended: automatic loading with fallback
    >>> config = RemediationConfig.load()
    >>> config.validate()
"""
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from .config_loader import env_var_name, flatten_config, get_env_config, load_config_with_overrides
from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_AUDIT_FILE,
    DEFAULT_BACKUP_DIR,
    DEFAULT_BACKUP_RETENTION,
    DEFAULT_CANARY_SOAK_SECONDS,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_CONFIG_TARGET,
    DEFAULT_DEPLOY_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_DEPLOY_STAGES,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_STAGE_PAUSE_SECONDS,
    DEFAULT_STATE_DB,
    DEFAULT_VALIDATION_TIMEOUT_SECONDS,
    VALID_DEPLOY_STRATEGIES,
    VALID_INSERTION_POLICIES,
)
from .exceptions import ConfigurationError, InvalidConfigError, InvalidRuleError
from .rules import parse_rule

logger = logging.getLogger(__name__)

SECRET_FIELDS = ("webhook_token", "slack_webhook_url")


@dataclass
class RemediationConfig:
    """
    Configuration for ADAPT-Remediate.

    Configuration can be loaded from:
    1. Configuration files (YAML or TOML)
    2. Environment variables (override file settings)
    3. Direct instantiation with parameters

    Every field can be overridden by ``ADAPT_REMEDIATE_<FIELD>`` (for example
    ``ADAPT_REMEDIATE_MAX_CONCURRENT=8``), except ``ingestion_rules``.

    Config file locations (searched in order):
        ./adapt-remediate.yaml, ./adapt-remediate.toml
        ~/.adapt-remediate.yaml, ~/.adapt-remediate.toml
        /etc/adapt-remediate.yaml, /etc/adapt-remediate.toml
    """
    # Pipeline
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    max_retries: int = DEFAULT_MAX_RETRIES
    try_next_candidate: bool = False
    dry_run: bool = False
    require_approval: bool = False
    auto_approve: bool = False
    catalog_path: Optional[str] = None
    include_default_patterns: bool = True
    insertion_policy: str = "import-aware"
    config_target: str = DEFAULT_CONFIG_TARGET
    base_dir: Optional[str] = None
    ingestion_rules: List[Dict[str, Any]] = field(default_factory=list)

    # Timeouts (seconds)
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT_SECONDS
    validation_timeout: int = DEFAULT_VALIDATION_TIMEOUT_SECONDS
    approval_timeout: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    deploy_timeout: int = DEFAULT_DEPLOY_COMMAND_TIMEOUT_SECONDS

    # Backups
    backup_dir: str = DEFAULT_BACKUP_DIR
    backup_retention: int = DEFAULT_BACKUP_RETENTION

    # Validation
    validation_command: Optional[str] = None

    # Deployment
    deploy_strategy: str = "immediate"
    deploy_stages: Tuple[int, ...] = DEFAULT_DEPLOY_STAGES
    stage_pause: float = DEFAULT_STAGE_PAUSE_SECONDS
    canary_soak: float = DEFAULT_CANARY_SOAK_SECONDS
    build_command: Optional[str] = None
    deploy_command: Optional[str] = None
    canary_command: Optional[str] = None
    promote_command: Optional[str] = None
    rollback_command: Optional[str] = None
    health_check_url: Optional[str] = None
    health_check_command: Optional[str] = None

    # State and audit
    state_db: str = DEFAULT_STATE_DB
    audit_file: Optional[str] = DEFAULT_AUDIT_FILE

    # Notifications
    slack_webhook_url: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_token: Optional[str] = None

    # Logging configuration
    log_level: str = "WARNING"
    log_file: Optional[str] = None
    json_logs: bool = False

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            InvalidConfigError: If any configuration value is invalid
        """
        errors = []

        # Validate positive integers
        for name in ("max_concurrent", "max_retries", "command_timeout",
                     "validation_timeout", "approval_timeout", "deploy_timeout",
                     "backup_retention"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer, got {value!r}")

        for name in ("stage_pause", "canary_soak"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative, got {getattr(self, name)}")

        if self.deploy_strategy not in VALID_DEPLOY_STRATEGIES:
            errors.append(
                f"deploy_strategy must be one of {VALID_DEPLOY_STRATEGIES}, got '{self.deploy_strategy}'"
            )

        stages = list(self.deploy_stages)
        if (not stages or stages != sorted(stages) or stages[-1] != 100
                or any(not 0 < s <= 100 for s in stages)):
            errors.append(f"deploy_stages must increase and end at 100, got {self.deploy_stages}")

        if self.insertion_policy not in VALID_INSERTION_POLICIES:
            errors.append(
                f"insertion_policy must be one of {VALID_INSERTION_POLICIES}, got '{self.insertion_policy}'"
            )

        if self.auto_approve and self.require_approval:
            logger.warning("auto_approve is set; require_approval has no effect")

        for index, rule in enumerate(self.ingestion_rules):
            if not isinstance(rule, dict) or "when" not in rule:
                errors.append(f"ingestion_rules[{index}] must be a mapping with a 'when' rule")
                continue
            if rule.get("action", "drop") not in ("drop", "allow"):
                errors.append(f"ingestion_rules[{index}].action must be 'drop' or 'allow'")
            try:
                parse_rule(rule["when"])
            except (InvalidRuleError, ValueError) as e:
                errors.append(f"ingestion_rules[{index}]: {e}")

        # Validate log level
        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if errors:
            raise InvalidConfigError("Configuration validation failed:\n  - " + "\n  - ".join(errors))

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Configuration as a dictionary, with secrets masked by default."""
        data = asdict(self)
        data["deploy_stages"] = list(self.deploy_stages)
        if redact:
            for name in SECRET_FIELDS:
                if data.get(name):
                    data[name] = "***"
        return data

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_env(cls) -> 'RemediationConfig':
        """
        Create configuration from environment variables only.

        Returns:
            RemediationConfig instance populated from environment variables
        """
        return cls(**flatten_config(get_env_config()))

    @classmethod
    def from_file(cls, config_path: Optional[str] = None) -> 'RemediationConfig':
        """
        Create configuration from file with environment variable overrides.

        Loads configuration from YAML or TOML file and applies environment
        variable overrides. If no path is provided, searches standard locations.

        Args:
            config_path: Optional explicit path to config file.
                        If None, searches standard locations.

        Returns:
            RemediationConfig instance with merged configuration

        Raises:
            ConfigurationError: If an explicit config_path is missing or invalid

        Example:
            >>> config = RemediationConfig.from_file("my-config.yaml")
            >>> config = RemediationConfig.from_file()  # Auto-search
        """
        try:
            config_dict = load_config_with_overrides(config_path)
        except ConfigurationError as e:
            if config_path:
                raise
            logger.error(f"Failed to load configuration from file: {e}")
            logger.warning("Falling back to environment variable configuration")
            return cls.from_env()

        return cls(**config_dict)

    @classmethod
    def load(cls, config_path: Optional[str] = None, use_file: bool = True) -> 'RemediationConfig':
        """
        Load configuration with automatic fallback.

        This is the recommended method for loading configuration.

        Args:
            config_path: Optional explicit path to config file
            use_file: If True, attempts to load from file before env vars

        Returns:
            RemediationConfig instance

        Example:
            >>> # Try file, fall back to env vars
            >>> config = RemediationConfig.load()
            >>>
            >>> # Only use env vars
            >>> config = RemediationConfig.load(use_file=False)
        """
        if use_file:
            return cls.from_file(config_path)
        else:
            return cls.from_env()


__all__ = ["RemediationConfig", "env_var_name"]
