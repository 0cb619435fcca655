"""
Tests for data models.

Verifies detected error parsing and fix pattern validation.
"""

from datetime import datetime

import pytest
from pydantic import ValidationError

from adapt_remediate.models import (
    ErrorCategory,
    FixPattern,
    RiskLevel,
    RunCommand,
    Severity,
    UpdateConfigKey,
)
from adapt_remediate.rules import Comparison

from conftest import make_error, make_pattern


def test_detected_error_normalizes_enums():
    """Test that category and severity are case-insensitive."""
    error = make_error(category="SECURITY", severity="High")

    assert error.category == ErrorCategory.SECURITY
    assert error.severity == Severity.HIGH


def test_detected_error_is_frozen():
    error = make_error()

    with pytest.raises(ValidationError):
        error.message = "changed"


def test_detected_error_requires_id():
    with pytest.raises(ValidationError):
        make_error(id="")


def test_detected_error_rejects_unknown_category():
    with pytest.raises(ValidationError):
        make_error(category="cosmic-rays")


def test_detected_error_timestamp_parsing():
    """Test ISO timestamps parse and garbage falls back to now."""
    parsed = make_error(timestamp="2025-01-15T10:30:00Z")
    assert parsed.timestamp.year == 2025
    assert parsed.timestamp.hour == 10

    fallback = make_error(timestamp="not a timestamp")
    assert isinstance(fallback.timestamp, datetime)


def test_detected_error_context_defaults_empty():
    error = make_error()

    assert error.context == {}
    assert error.stack_trace is None


def test_fix_pattern_parses_actions_by_kind():
    pattern = make_pattern(actions=[
        {"kind": "run-command", "command": "chmod 600 {target}", "timeout": 5},
        {"kind": "update-config-key", "key": "server.tls", "value": True},
    ])

    assert isinstance(pattern.actions[0], RunCommand)
    assert pattern.actions[0].references_target()
    assert isinstance(pattern.actions[1], UpdateConfigKey)


def test_fix_pattern_requires_an_action():
    with pytest.raises(ValidationError):
        make_pattern(actions=[])


def test_fix_pattern_rejects_unknown_action_kind():
    with pytest.raises(ValidationError):
        make_pattern(actions=[{"kind": "reboot-server"}])


def test_fix_pattern_rejects_extra_action_fields():
    with pytest.raises(ValidationError):
        make_pattern(actions=[{"kind": "delete-file", "recursive": True}])


@pytest.mark.parametrize("confidence", [-0.1, 1.5])
def test_fix_pattern_confidence_bounds(confidence):
    with pytest.raises(ValidationError):
        make_pattern(confidence=confidence)


def test_fix_pattern_rejects_invalid_regex():
    with pytest.raises(ValidationError):
        make_pattern(match_expressions=["(unclosed"])


def test_fix_pattern_severities_accept_single_value():
    pattern = make_pattern(severities="CRITICAL")

    assert pattern.severities == frozenset({Severity.CRITICAL})


def test_fix_pattern_defaults():
    pattern = FixPattern.model_validate({
        "id": "p",
        "name": "p",
        "category": "runtime",
        "actions": [{"kind": "delete-file"}],
        "confidence": 0.5,
    })

    assert pattern.validation_required is True
    assert pattern.risk_level == RiskLevel.MEDIUM
    assert pattern.reversible is True
    assert pattern.when is None


def test_fix_pattern_when_guard_is_parsed():
    pattern = make_pattern(when={"field": "context.env", "op": "==", "value": "prod"})

    assert isinstance(pattern.when, Comparison)


def test_fix_pattern_invalid_guard():
    with pytest.raises(ValidationError):
        make_pattern(when={"field": "severity", "op": "~="})


def test_fix_pattern_to_dict():
    pattern = make_pattern(severities=["medium", "high"])

    data = pattern.to_dict()

    assert data["id"] == "fix-001"
    assert data["severities"] == ["high", "medium"]
    assert data["actions"][0]["kind"] == "run-command"
    assert data["when"] is None
