"""
Tests for the validation gate and test output parsing.
"""

import pytest

from adapt_remediate.remediation.validation import (
    CommandValidationRunner,
    ValidationGate,
    ValidationResult,
    ValidationRunner,
    parse_test_output,
)


@pytest.mark.parametrize("output, exit_code, expected", [
    ("===== 5 passed, 1 skipped in 0.42s =====", 0, (6, 5, 0, 1)),
    ("===== 3 passed, 2 failed in 1.0s =====", 1, (5, 3, 2, 0)),
    ("Tests:       1 failed, 7 passed, 8 total", 1, (8, 7, 1, 0)),
    ("PASS: login\nPASS: logout\nFAIL: refresh token\n", 1, (3, 2, 1, 0)),
    ("all good", 0, (1, 1, 0, 0)),
    ("segmentation fault", 139, (1, 0, 1, 0)),
])
def test_parse_test_output_counts(output, exit_code, expected):
    total, passed, failed, skipped, _ = parse_test_output(output, exit_code)

    assert (total, passed, failed, skipped) == expected


def test_parse_marks_failures():
    _, _, _, _, failures = parse_test_output("PASS: a\nFAIL: b broke\n", 1)

    assert failures == ["b broke"]


def test_nonzero_exit_with_clean_summary_counts_as_failure():
    """A crash after a green summary must not pass."""
    total, passed, failed, _, failures = parse_test_output("4 passed", 2)

    assert failed >= 1
    assert total >= passed + failed
    assert "exit code 2" in failures


def test_result_with_no_tests_never_passes():
    result = ValidationResult(passed=True, total=0, passed_count=0, failed_count=0)

    assert result.passed is False


def test_from_counts():
    assert ValidationResult.from_counts(3, 3, 0).passed
    assert not ValidationResult.from_counts(3, 2, 1).passed
    assert not ValidationResult.from_counts(0, 0, 0).passed


def test_gate_without_runner_fails():
    result = ValidationGate().validate_target("app.py")

    assert not result.passed
    assert result.total == 0
    assert "No validation runner" in result.details


class ExplodingRunner(ValidationRunner):
    def run_validation(self, target, timeout):
        raise RuntimeError("runner crashed")


class SlowRunner(ValidationRunner):
    def run_validation(self, target, timeout):
        return ValidationResult.from_counts(1, 1, 0, duration_seconds=timeout + 1)


def test_gate_normalizes_runner_errors():
    result = ValidationGate(ExplodingRunner()).validate_target(None)

    assert not result.passed
    assert "runner crashed" in result.details


def test_gate_rejects_overdue_results():
    result = ValidationGate(SlowRunner(), timeout=5).validate_target(None)

    assert not result.passed
    assert "timed out" in result.details


def test_command_runner_substitutes_target(tmp_path):
    runner = CommandValidationRunner("test -f {target} && echo 'PASS: exists'")
    path = tmp_path / "app.py"
    path.write_text("")

    result = runner.run_validation(str(path), timeout=10)

    assert result.passed
    assert result.total == 1


def test_command_runner_timeout():
    runner = CommandValidationRunner("exec sleep 5")

    result = runner.run_validation(None, timeout=1)

    assert not result.passed
    assert "timed out" in result.details


def test_command_runner_quotes_target(tmp_path):
    marker = tmp_path / "injected"
    runner = CommandValidationRunner("echo 1 passed {target}", cwd=tmp_path)

    result = runner.run_validation(f"x; touch {marker}", timeout=10)

    assert not marker.exists()
    assert f"x; touch {marker}" in result.details
