"""
Shared fixtures for ADAPT-Remediate tests.
"""

from pathlib import Path
from typing import Any, Dict, List

import pytest

from adapt_remediate.alerting.notifiers import Notification, Notifier
from adapt_remediate.audit.audit_system import AuditStream
from adapt_remediate.metrics import metrics
from adapt_remediate.models import DetectedError, FixPattern
from adapt_remediate.remediation.backup import BackupStore
from adapt_remediate.remediation.catalog import FixCatalog
from adapt_remediate.remediation.deployment import DeploymentDriver, NullDeploymentTarget
from adapt_remediate.remediation.engine import RemediationOrchestrator
from adapt_remediate.storage.attempt_store import AttemptStore


class RecordingNotifier(Notifier):
    """Keeps every notification for assertions."""

    def __init__(self):
        self.sent: List[Notification] = []

    def notify(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return True


def make_error(**overrides: Any) -> DetectedError:
    """Build a detected error with sensible defaults."""
    data: Dict[str, Any] = {
        "id": "E1",
        "category": "security",
        "severity": "high",
        "source": "config.json",
        "message": "insecure file permissions 777 on config.json",
    }
    data.update(overrides)
    return DetectedError(**data)


def make_pattern(**overrides: Any) -> FixPattern:
    """Build a low-risk fix pattern; override any field."""
    data: Dict[str, Any] = {
        "id": "fix-001",
        "name": "Test fix",
        "category": "security",
        "severities": ["high"],
        "match_expressions": [r"insecure.*permissions"],
        "actions": [{"kind": "run-command", "command": "chmod 600 {target}"}],
        "confidence": 1.0,
        "validation_required": False,
        "risk_level": "low",
    }
    data.update(overrides)
    return FixPattern.model_validate(data)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are a process-wide singleton."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def target_file(tmp_path: Path) -> Path:
    """A world-readable config file."""
    path = tmp_path / "config.json"
    path.write_text('{"debug": true}\n')
    path.chmod(0o777)
    return path


@pytest.fixture
def backup_store(tmp_path: Path) -> BackupStore:
    return BackupStore(tmp_path / "backups")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def build_orchestrator(tmp_path: Path, backup_store: BackupStore, notifier: RecordingNotifier):
    """Factory for an orchestrator wired to temporary stores."""
    created: List[RemediationOrchestrator] = []

    def build(patterns=None, **kwargs: Any) -> RemediationOrchestrator:
        options: Dict[str, Any] = {
            "backup_store": backup_store,
            "attempt_store": AttemptStore(),
            "audit": AuditStream(),
            "notifier": notifier,
            "deployment_driver": DeploymentDriver(NullDeploymentTarget()),
        }
        options.update(kwargs)
        if patterns is not None:
            options["catalog"] = FixCatalog(patterns)
        orchestrator = RemediationOrchestrator(**options)
        created.append(orchestrator)
        return orchestrator

    yield build

    for orchestrator in created:
        orchestrator.shutdown(wait=True, cancel_pending=True)
