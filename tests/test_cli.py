"""
Tests for the command-line interface.
"""

import json
import logging
import stat
from datetime import datetime, timedelta

import pytest

from adapt_remediate.cli import create_parser, load_errors, main
from adapt_remediate.config import RemediationConfig, env_var_name
from adapt_remediate.constants import DEFAULT_STATE_DB
from adapt_remediate.logging_config import reset_logging_config
from adapt_remediate.storage.attempt_store import AttemptStore

ERROR = {
    "id": "E1",
    "category": "security",
    "severity": "high",
    "source": "config.json",
    "message": "insecure file permissions 777 on config.json",
}


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Run every command in a scratch directory with a clean environment."""
    for name in RemediationConfig.field_names():
        monkeypatch.delenv(env_var_name(name), raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    yield tmp_path
    reset_logging_config()
    logging.getLogger().setLevel(logging.WARNING)


@pytest.fixture
def errors_file(tmp_path, target_file):
    path = tmp_path / "errors.json"
    path.write_text(json.dumps([ERROR]))
    return path


def test_parser_defaults():
    args = create_parser().parse_args(["run", "errors.json"])

    assert args.errors == "errors.json"
    assert args.dry_run is False
    assert args.strategy is None


def test_no_subcommand_prints_help(capsys):
    assert main(["--quiet"]) == 1
    assert "usage" in capsys.readouterr().out


def test_version(capsys):
    assert main(["--quiet", "version"]) == 0
    assert "ADAPT-Remediate version" in capsys.readouterr().out


class TestLoadErrors:
    """Tests for reading detected errors."""

    def test_json_array(self, tmp_path):
        path = tmp_path / "errors.json"
        path.write_text(json.dumps([ERROR, {**ERROR, "id": "E2"}]))

        assert [e.id for e in load_errors(path)] == ["E1", "E2"]

    def test_json_object_with_errors_key(self, tmp_path):
        path = tmp_path / "errors.json"
        path.write_text(json.dumps({"errors": [ERROR]}))

        assert load_errors(path)[0].id == "E1"

    def test_single_json_object(self, tmp_path):
        path = tmp_path / "error.json"
        path.write_text(json.dumps(ERROR))

        assert load_errors(path)[0].id == "E1"

    def test_jsonl(self, tmp_path):
        path = tmp_path / "errors.jsonl"
        path.write_text(json.dumps(ERROR) + "\n\n" + json.dumps({**ERROR, "id": "E2"}) + "\n")

        assert len(load_errors(path)) == 2

    def test_bad_jsonl_line(self, tmp_path):
        path = tmp_path / "errors.jsonl"
        path.write_text(json.dumps(ERROR) + "\n{broken\n")

        with pytest.raises(ValueError, match=":2:"):
            load_errors(path)

    def test_invalid_entry(self, tmp_path):
        path = tmp_path / "errors.json"
        path.write_text(json.dumps([{"id": "E1", "category": "weather"}]))

        with pytest.raises(ValueError, match="entry 0"):
            load_errors(path)


class TestRunCommand:
    """End-to-end runs through the CLI."""

    def test_run_fixes_permissions(self, errors_file, target_file, capsys):
        exit_code = main(["--quiet", "run", str(errors_file), "--output", "results.json"])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "E1#1: succeeded [sec-005]" in out
        assert stat.S_IMODE(target_file.stat().st_mode) == 0o600

        results = json.loads((errors_file.parent / "results.json").read_text())
        assert results[0]["disposition"] == "succeeded"

    def test_dry_run_leaves_target_alone(self, errors_file, target_file, capsys):
        exit_code = main(["--quiet", "run", str(errors_file), "--dry-run"])

        assert exit_code == 0
        assert "(dry run)" in capsys.readouterr().out
        assert stat.S_IMODE(target_file.stat().st_mode) == 0o777

    def test_failed_attempt_exits_2(self, tmp_path, capsys):
        path = tmp_path / "errors.json"
        path.write_text(json.dumps([{**ERROR, "source": "."}]))

        assert main(["--quiet", "run", str(path)]) == 2
        assert "TargetUnreadable" in capsys.readouterr().out

    def test_missing_errors_file(self, capsys):
        assert main(["--quiet", "run", "absent.json"]) == 1
        assert "ERROR" in capsys.readouterr().out

    def test_audit_and_backups_after_run(self, errors_file, capsys):
        main(["--quiet", "run", str(errors_file)])
        capsys.readouterr()

        assert main(["--quiet", "audit", "--attempt", "E1#1", "--json"]) == 0
        events = json.loads(capsys.readouterr().out)
        assert events[0]["to_state"] == "detected"
        assert events[-1]["to_state"] == "succeeded"

        assert main(["--quiet", "backups", "list"]) == 0
        assert "config.json" in capsys.readouterr().out


def test_preview_outputs_ranked_candidates(errors_file, target_file, capsys):
    assert main(["--quiet", "preview", str(errors_file)]) == 0

    report = json.loads(capsys.readouterr().out)
    top = report[0]["candidates"][0]
    assert top["pattern_id"] == "sec-005"
    assert top["needs_approval"] is False
    assert top["targets"] == [str(target_file)]
    assert stat.S_IMODE(target_file.stat().st_mode) == 0o777


def test_catalog_list(capsys):
    assert main(["--quiet", "catalog", "list"]) == 0
    assert "sec-005" in capsys.readouterr().out


def test_catalog_stats(capsys):
    assert main(["--quiet", "catalog", "stats"]) == 0
    assert json.loads(capsys.readouterr().out)["total_patterns"] == 12


def test_audit_without_log(capsys):
    assert main(["--quiet", "audit"]) == 0
    assert "No audit log" in capsys.readouterr().out


def test_backups_restore_requires_id(capsys):
    assert main(["--quiet", "backups", "restore"]) == 1


def test_config_validate(tmp_path, capsys):
    assert main(["--quiet", "config", "validate"]) == 0

    bad = tmp_path / "bad.yaml"
    bad.write_text("pipeline:\n  max_concurrent: 0\n")
    assert main(["--quiet", "--config-file", str(bad), "config", "validate"]) == 1
    assert "max_concurrent" in capsys.readouterr().out


def test_config_show_redacts(tmp_path, capsys):
    path = tmp_path / "adapt-remediate.yaml"
    path.write_text("notifications:\n  webhook_token: s3cret\n")

    assert main(["--quiet", "--verbose", "config", "show"]) == 0
    out = capsys.readouterr().out
    assert "s3cret" not in out
    assert '"webhook_token": "***"' in out


class TestApproveCommand:
    @pytest.fixture
    def open_request(self, isolated_cwd):
        store = AttemptStore(isolated_cwd / DEFAULT_STATE_DB)
        store.open_approval("E1#1", "tok-123", "fix-001", datetime.now() + timedelta(minutes=5))
        return store

    def test_approve_records_decision(self, open_request, capsys):
        assert main(["--quiet", "approvals"]) == 0
        assert "E1#1" in capsys.readouterr().out

        assert main(["--quiet", "approve", "E1#1", "tok-123"]) == 0
        assert "approved" in capsys.readouterr().out
        assert open_request.approval_decision("E1#1") == "approved"

        assert main(["--quiet", "approvals"]) == 0
        assert "No pending approvals" in capsys.readouterr().out

    def test_deny_records_decision(self, open_request, capsys):
        assert main(["--quiet", "deny", "E1#1", "tok-123"]) == 0
        assert open_request.approval_decision("E1#1") == "denied"

    def test_wrong_token_fails(self, open_request, capsys):
        assert main(["--quiet", "approve", "E1#1", "guess"]) == 1
        assert "ERROR" in capsys.readouterr().out
        assert open_request.approval_decision("E1#1") is None

    def test_unknown_attempt_fails(self, capsys):
        assert main(["--quiet", "approve", "E9#1", "tok-123"]) == 1
