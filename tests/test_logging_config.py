"""
Tests for handler setup.
"""

import json
import logging

import pytest

from adapt_remediate.logging_config import configure_cli_logging, reset_logging_config, setup_logging
from adapt_remediate.logging_context import LoggingContext


@pytest.fixture(autouse=True)
def clean_root_logger():
    reset_logging_config()
    yield
    reset_logging_config()
    logging.getLogger().setLevel(logging.WARNING)


@pytest.mark.parametrize("flags, expected", [
    ({}, logging.WARNING),
    ({"verbose": True}, logging.INFO),
    ({"verbose": True, "quiet": True}, logging.ERROR),
    ({"quiet": True, "debug": True}, logging.DEBUG),
    ({"default_level": "info"}, logging.INFO),
])
def test_cli_flags_pick_level(flags, expected):
    configure_cli_logging(**flags)

    assert logging.getLogger().level == expected


def test_json_log_file_carries_attempt_ids(tmp_path):
    log_file = tmp_path / "logs" / "remediate.log"
    setup_logging(level="INFO", log_file=log_file, json_format=True)

    with LoggingContext(attempt_id="E1#1", error_id="E1"):
        logging.getLogger("adapt_remediate.test").info("Backed up config.json")
    reset_logging_config()

    entry = json.loads(log_file.read_text().splitlines()[-1])
    assert entry["message"] == "Backed up config.json"
    assert entry["attempt_id"] == "E1#1"
    assert entry["error_id"] == "E1"


def test_setup_is_idempotent():
    root = logging.getLogger()
    before = len(root.handlers)

    setup_logging(level="INFO")
    setup_logging(level="DEBUG")

    assert len(root.handlers) == before + 1
    assert root.level == logging.DEBUG
