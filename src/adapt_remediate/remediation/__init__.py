"""
Remediation pipeline for ADAPT-Remediate.

This package turns a detected error into a deployed, validated fix:
- Fix catalog and matcher (candidate ranking)
- Backup store (snapshot and atomic restore)
- Fix applier (closed set of file and command actions)
- Validation gate, approval gate and deployment driver
- Orchestrator state machine tying them together

Classes:
    RemediationOrchestrator: Core remediation orchestration
    FixCatalog: Runtime-mutable catalog of fix patterns
    FixMatcher: Candidate ranking
    BackupStore: Durable snapshot store
    FixApplier: Executes fix actions
"""

from .actions import AppliedFix, FixApplier, ActionStatus
from .approval import ApprovalBroker, ApprovalDecision, ApprovalGate
from .backup import Backup, BackupStore
from .catalog import FixCatalog, default_catalog, load_catalog
from .deployment import (
    CommandDeploymentTarget,
    DeploymentDriver,
    DeploymentResult,
    DeploymentStrategy,
    NullDeploymentTarget,
)
from .engine import (
    AttemptState,
    Disposition,
    FailureReason,
    IngestionRule,
    RemediationAttempt,
    RemediationOrchestrator,
    RemediationResult,
)
from .matcher import FixMatcher
from .validation import CommandValidationRunner, ValidationGate, ValidationResult

__all__ = [
    "AppliedFix",
    "FixApplier",
    "ActionStatus",
    "ApprovalBroker",
    "ApprovalDecision",
    "ApprovalGate",
    "Backup",
    "BackupStore",
    "FixCatalog",
    "default_catalog",
    "load_catalog",
    "CommandDeploymentTarget",
    "DeploymentDriver",
    "DeploymentResult",
    "DeploymentStrategy",
    "NullDeploymentTarget",
    "AttemptState",
    "Disposition",
    "FailureReason",
    "IngestionRule",
    "RemediationAttempt",
    "RemediationOrchestrator",
    "RemediationResult",
    "FixMatcher",
    "CommandValidationRunner",
    "ValidationGate",
    "ValidationResult",
]
