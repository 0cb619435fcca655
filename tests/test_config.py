"""
Tests for configuration module.
"""
import pytest

from adapt_remediate.config import RemediationConfig, env_var_name
from adapt_remediate.exceptions import InvalidConfigError, MissingConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep host environment and config files out of these tests."""
    for name in RemediationConfig.field_names():
        monkeypatch.delenv(env_var_name(name), raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


def test_config_defaults() -> None:
    """Test default configuration values."""
    config = RemediationConfig()

    assert config.max_concurrent == 5
    assert config.max_retries == 3
    assert config.try_next_candidate is False
    assert config.deploy_strategy == "immediate"
    assert config.deploy_stages == (10, 50, 100)
    assert config.backup_retention == 100
    config.validate()


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test configuration from environment variables."""
    monkeypatch.setenv("ADAPT_REMEDIATE_MAX_CONCURRENT", "8")
    monkeypatch.setenv("ADAPT_REMEDIATE_TRY_NEXT_CANDIDATE", "yes")
    monkeypatch.setenv("ADAPT_REMEDIATE_DEPLOY_STAGES", "25,100")
    monkeypatch.setenv("ADAPT_REMEDIATE_STAGE_PAUSE", "1.5")

    config = RemediationConfig.from_env()

    assert config.max_concurrent == 8
    assert config.try_next_candidate is True
    assert config.deploy_stages == (25, 100)
    assert config.stage_pause == 1.5


def test_config_invalid_int_env_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that invalid integers fall back to defaults."""
    monkeypatch.setenv("ADAPT_REMEDIATE_MAX_RETRIES", "not-a-number")

    assert RemediationConfig.from_env().max_retries == 3


def test_config_from_yaml_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that env vars override file values."""
    path = tmp_path / "settings.yaml"
    path.write_text(
        "pipeline:\n"
        "  max_retries: 5\n"
        "  ingestion_rules:\n"
        "    - name: skip-low\n"
        "      action: drop\n"
        "      when: {field: severity, op: '==', value: low}\n"
        "deployment:\n"
        "  strategy: staged\n"
        "  stages: [20, 100]\n"
    )
    monkeypatch.setenv("ADAPT_REMEDIATE_MAX_RETRIES", "7")

    config = RemediationConfig.from_file(str(path))

    assert config.max_retries == 7
    assert config.deploy_strategy == "staged"
    assert config.deploy_stages == (20, 100)
    assert config.ingestion_rules[0]["name"] == "skip-low"
    config.validate()


def test_config_from_toml_file(tmp_path) -> None:
    path = tmp_path / "settings.toml"
    path.write_text(
        "[backup]\n"
        "dir = \"/var/backups/remediate\"\n"
        "retention = 10\n"
        "[timeouts]\n"
        "command = 30\n"
    )

    config = RemediationConfig.from_file(str(path))

    assert config.backup_dir == "/var/backups/remediate"
    assert config.backup_retention == 10
    assert config.command_timeout == 30


def test_explicit_missing_file_raises(tmp_path) -> None:
    with pytest.raises(MissingConfigError):
        RemediationConfig.from_file(str(tmp_path / "absent.yaml"))


def test_search_path_file_is_found(tmp_path) -> None:
    (tmp_path / "adapt-remediate.yaml").write_text("pipeline:\n  dry_run: true\n")

    assert RemediationConfig.load().dry_run is True


def test_load_without_file() -> None:
    assert RemediationConfig.load(use_file=False) == RemediationConfig()


def test_validate_collects_errors() -> None:
    config = RemediationConfig(
        max_concurrent=0,
        deploy_strategy="blue-green",
        deploy_stages=(50, 10),
        insertion_policy="random",
        log_level="LOUD",
    )

    with pytest.raises(InvalidConfigError) as excinfo:
        config.validate()

    message = str(excinfo.value)
    for name in ("max_concurrent", "deploy_strategy", "deploy_stages",
                 "insertion_policy", "log_level"):
        assert name in message


def test_validate_rejects_bad_ingestion_rule() -> None:
    config = RemediationConfig(ingestion_rules=[
        {"when": {"field": "severity", "op": "~=", "value": "low"}},
        {"when": {"field": "severity", "op": "==", "value": "low"}, "action": "explode"},
        "not a rule",
    ])

    with pytest.raises(InvalidConfigError) as excinfo:
        config.validate()

    message = str(excinfo.value)
    assert "ingestion_rules[0]" in message
    assert "ingestion_rules[1].action" in message
    assert "ingestion_rules[2]" in message


def test_to_dict_redacts_secrets() -> None:
    config = RemediationConfig(webhook_token="s3cret", slack_webhook_url="https://hooks.example/x")

    data = config.to_dict()

    assert data["webhook_token"] == "***"
    assert data["slack_webhook_url"] == "***"
    assert data["deploy_stages"] == [10, 50, 100]
    assert config.to_dict(redact=False)["webhook_token"] == "s3cret"
