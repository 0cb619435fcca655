"""
Tests for exception handling and custom exception types.

Verifies the hierarchy the orchestrator relies on when mapping failures.
"""

import pytest

from adapt_remediate import exceptions
from adapt_remediate.exceptions import (
    BackupError,
    ConfigurationError,
    InvalidApprovalTokenError,
    InvalidConfigError,
    MissingConfigError,
    RemediationError,
    RestoreFailedError,
    TargetUnreadableError,
)


@pytest.mark.parametrize("name", exceptions.__all__)
def test_every_exception_derives_from_base(name):
    assert issubclass(getattr(exceptions, name), RemediationError)


def test_backup_errors_share_a_base():
    assert issubclass(TargetUnreadableError, BackupError)
    assert issubclass(RestoreFailedError, BackupError)


def test_config_errors_share_a_base():
    with pytest.raises(ConfigurationError):
        raise MissingConfigError("no file")
    with pytest.raises(ConfigurationError):
        raise InvalidConfigError("bad value")


def test_message_is_preserved():
    error = InvalidApprovalTokenError("Invalid approval token for E1#1")

    assert str(error) == "Invalid approval token for E1#1"
