"""
Custom exception types for ADAPT-Remediate.

Provides specific exception classes for the remediation pipeline so the
orchestrator can map each failure to a terminal reason.
"""


class RemediationError(Exception):
    """Base exception for all ADAPT-Remediate errors."""
    pass


# Catalog errors
class CatalogError(RemediationError):
    """Base exception for fix catalog errors."""
    pass


class PatternNotFoundError(CatalogError):
    """Fix pattern not found in catalog."""
    pass


class InvalidRuleError(CatalogError):
    """Rule expression could not be parsed."""
    pass


# Backup errors
class BackupError(RemediationError):
    """Base exception for backup store errors."""
    pass


class TargetUnreadableError(BackupError):
    """Target exists but its current state cannot be read."""
    pass


class BackupFailedError(BackupError):
    """Snapshot could not be durably recorded."""
    pass


class BackupNotFoundError(BackupError):
    """Backup record not found."""
    pass


class RestoreFailedError(BackupError):
    """Restoring a backup failed; state may be inconsistent."""
    pass


class BackupMissingError(BackupError):
    """A mutation was attempted on a target with no backup."""
    pass


# Apply/validate/deploy errors
class ActionFailedError(RemediationError):
    """A fix action failed."""
    pass


class ValidationFailedError(RemediationError):
    """Validation suite reported failure."""
    pass


class ApprovalError(RemediationError):
    """Base exception for approval errors."""
    pass


class ApprovalDeniedError(ApprovalError):
    """Approval was explicitly denied."""
    pass


class ApprovalTimeoutError(ApprovalError):
    """No approval decision arrived in time."""
    pass


class InvalidApprovalTokenError(ApprovalError):
    """Approval token is unknown, expired, or bound to another attempt."""
    pass


class DeployFailedError(RemediationError):
    """Deployment or post-deploy health check failed."""
    pass


# Pipeline errors
class PipelineError(RemediationError):
    """Base exception for orchestrator errors."""
    pass


class InvalidTransitionError(PipelineError):
    """State transition not allowed by the state machine."""
    pass


class DuplicateAttemptError(PipelineError):
    """An attempt for this error id is already active."""
    pass


# Configuration errors
class ConfigurationError(RemediationError):
    """Base exception for configuration errors."""
    pass


class InvalidConfigError(ConfigurationError):
    """Invalid configuration."""
    pass


class MissingConfigError(ConfigurationError):
    """Required configuration missing."""
    pass


# Export mapping for common usage
__all__ = [
    "RemediationError",
    "CatalogError",
    "PatternNotFoundError",
    "InvalidRuleError",
    "BackupError",
    "TargetUnreadableError",
    "BackupFailedError",
    "BackupNotFoundError",
    "RestoreFailedError",
    "BackupMissingError",
    "ActionFailedError",
    "ValidationFailedError",
    "ApprovalError",
    "ApprovalDeniedError",
    "ApprovalTimeoutError",
    "InvalidApprovalTokenError",
    "DeployFailedError",
    "PipelineError",
    "InvalidTransitionError",
    "DuplicateAttemptError",
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
]
