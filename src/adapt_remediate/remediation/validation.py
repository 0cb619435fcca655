"""
Validation gate: runs the external validation capability and normalizes
its output.

A validation run that cannot happen (no runner, runner error, timeout)
reports ``passed=False`` with ``total=0``. Zero tests is never a pass.
"""

import logging
import re
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..constants import DEFAULT_VALIDATION_TIMEOUT_SECONDS
from .shell import run_shell

logger = logging.getLogger(__name__)

_TOTAL = re.compile(r"(\d+)\s+(?:total|tests?)\b", re.IGNORECASE)
_PASSED = re.compile(r"(\d+)\s+passed", re.IGNORECASE)
_FAILED = re.compile(r"(\d+)\s+failed", re.IGNORECASE)
_ERRORS = re.compile(r"(\d+)\s+errors?\b", re.IGNORECASE)
_SKIPPED = re.compile(r"(\d+)\s+skipped", re.IGNORECASE)
_PASS_MARKER = re.compile(r"^\W*PASS:", re.MULTILINE)
_FAIL_MARKER = re.compile(r"^\W*FAIL:\s*(.*)$", re.MULTILINE)


@dataclass
class ValidationResult:
    """Normalized outcome of a validation run."""

    passed: bool
    total: int
    passed_count: int
    failed_count: int
    skipped_count: int = 0
    details: str = ""
    duration_seconds: float = 0.0
    failures: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.total <= 0:
            self.passed = False

    @classmethod
    def unavailable(cls, details: str, duration_seconds: float = 0.0) -> "ValidationResult":
        """Result for a validation run that could not happen."""
        return cls(
            passed=False,
            total=0,
            passed_count=0,
            failed_count=0,
            details=details,
            duration_seconds=duration_seconds
        )

    @classmethod
    def from_counts(
        cls,
        total: int,
        passed_count: int,
        failed_count: int,
        skipped_count: int = 0,
        details: str = "",
        duration_seconds: float = 0.0,
        failures: Optional[List[str]] = None
    ) -> "ValidationResult":
        return cls(
            passed=total > 0 and failed_count == 0 and passed_count > 0,
            total=total,
            passed_count=passed_count,
            failed_count=failed_count,
            skipped_count=skipped_count,
            details=details,
            duration_seconds=duration_seconds,
            failures=failures or []
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "total": self.total,
            "passed_count": self.passed_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "details": self.details,
            "duration_seconds": self.duration_seconds,
            "failures": self.failures
        }


def _last_int(regex: "re.Pattern[str]", output: str) -> Optional[int]:
    matches = regex.findall(output)
    return int(matches[-1]) if matches else None


def parse_test_output(output: str, exit_code: int) -> Tuple[int, int, int, int, List[str]]:
    """
    Extract test counts from heterogeneous tool output.

    Recognizes ``PASS:``/``FAIL:`` marker lines, then pytest/jest style
    summaries (``3 passed, 1 failed``, ``4 total``). Output with neither
    counts as a single check decided by the exit code. A non-zero exit is
    always at least one failure.

    Args:
        output: Combined stdout/stderr
        exit_code: Process exit code

    Returns:
        (total, passed, failed, skipped, failure descriptions)
    """
    passes = len(_PASS_MARKER.findall(output))
    fail_lines = [line.strip() for line in _FAIL_MARKER.findall(output)]

    if passes or fail_lines:
        total, passed, failed, skipped = passes + len(fail_lines), passes, len(fail_lines), 0
    else:
        passed = _last_int(_PASSED, output)
        failed = _last_int(_FAILED, output)
        errors = _last_int(_ERRORS, output)
        skipped = _last_int(_SKIPPED, output) or 0
        total = _last_int(_TOTAL, output)

        if passed is None and failed is None and total is None:
            ok = exit_code == 0
            return 1, int(ok), int(not ok), 0, [] if ok else [f"exit code {exit_code}"]

        failed = (failed or 0) + (errors or 0)
        if passed is None:
            passed = max((total or 0) - failed - skipped, 0)
        if total is None:
            total = passed + failed + skipped

    if exit_code != 0 and failed == 0:
        failed = max(total - passed - skipped, 1)
        total = max(total, passed + failed + skipped)
        fail_lines.append(f"exit code {exit_code}")

    return total, passed, failed, skipped, fail_lines


class ValidationRunner(ABC):
    """The external "run validation suite" capability."""

    @abstractmethod
    def run_validation(self, target: Optional[str], timeout: float) -> ValidationResult:
        """
        Run the validation suite.

        Args:
            target: Artifact that was changed (may be None)
            timeout: Maximum seconds to wait

        Returns:
            Normalized ValidationResult
        """
        pass


class CommandValidationRunner(ValidationRunner):
    """
    Runs a shell command (e.g. ``pytest -q`` or ``npm test``) and parses
    its output. ``{target}`` in the command is replaced with the shell-quoted
    target path.

    Example:
        >>> runner = CommandValidationRunner("pytest -q tests/")
        >>> result = runner.run_validation("src/app.py", timeout=60)
    """

    def __init__(self, command: str, cwd: Optional[Union[str, Path]] = None):
        self.command = command
        self.cwd = str(cwd) if cwd is not None else None

    def run_validation(self, target: Optional[str], timeout: float) -> ValidationResult:
        command = self.command.replace("{target}", shlex.quote(target) if target else "")
        start = time.monotonic()
        logger.info(f"Running validation: {command}")

        try:
            proc = run_shell(command, timeout, cwd=self.cwd)
        except subprocess.TimeoutExpired:
            return ValidationResult.unavailable(
                f"Validation timed out after {timeout}s", time.monotonic() - start
            )
        except OSError as e:
            return ValidationResult.unavailable(f"Cannot run validation: {e}")

        output = (proc.stdout or "") + (proc.stderr or "")
        total, passed, failed, skipped, failures = parse_test_output(output, proc.returncode)

        return ValidationResult.from_counts(
            total=total,
            passed_count=passed,
            failed_count=failed,
            skipped_count=skipped,
            details=output[-4000:],
            duration_seconds=time.monotonic() - start,
            failures=failures
        )


class ValidationGate:
    """
    Runs validation for an attempt and guarantees a normalized result.

    Args:
        runner: Validation capability; None means validation cannot run
        timeout: Seconds allowed for the run
    """

    def __init__(
        self,
        runner: Optional[ValidationRunner] = None,
        timeout: float = DEFAULT_VALIDATION_TIMEOUT_SECONDS
    ):
        self.runner = runner
        self.timeout = timeout

    def validate(self, attempt: Any) -> ValidationResult:
        """Validate the artifact an attempt changed."""
        return self.validate_target(attempt.error.source or None)

    def validate_target(self, target: Optional[str]) -> ValidationResult:
        if self.runner is None:
            logger.warning("No validation runner configured; treating as failed")
            return ValidationResult.unavailable("No validation runner configured")

        start = time.monotonic()
        try:
            result = self.runner.run_validation(target, self.timeout)
        except Exception as e:
            logger.error(f"Validation runner raised: {e}", exc_info=True)
            return ValidationResult.unavailable(
                f"Validation runner error: {e}", time.monotonic() - start
            )

        if result.duration_seconds > self.timeout:
            logger.warning(f"Validation exceeded {self.timeout}s; treating as failed")
            return ValidationResult.unavailable(
                f"Validation timed out after {self.timeout}s", result.duration_seconds
            )

        logger.info(
            f"Validation {'passed' if result.passed else 'failed'}: "
            f"{result.passed_count}/{result.total} passed, {result.failed_count} failed"
        )
        return result
