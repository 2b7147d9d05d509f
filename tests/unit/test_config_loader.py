"""
Unit tests for settings loading.
"""

import pytest
from pydantic import ValidationError

from review_consensus.config.loader import ENV_DB_PATH, ENV_LOCK_TIMEOUT, load_settings
from review_consensus.utils.logging_config import LogLevel


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    monkeypatch.delenv(ENV_DB_PATH, raising=False)
    monkeypatch.delenv(ENV_LOCK_TIMEOUT, raising=False)


def test_defaults_without_file():
    settings = load_settings(None)
    assert settings.locks.timeout_seconds == 5.0
    assert settings.retry.max_attempts == 3
    assert settings.screening.require_exclusion_reason is False
    assert settings.screening.batch_max_size == 100


def test_load_yaml(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "database_path: /tmp/x.db\n"
        "locks:\n  timeout_seconds: 1.5\n"
        "screening:\n  require_exclusion_reason: true\n",
        encoding="utf-8",
    )
    settings = load_settings(str(path))
    assert settings.database_path == "/tmp/x.db"
    assert settings.locks.timeout_seconds == 1.5
    assert settings.screening.require_exclusion_reason is True


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_DB_PATH, str(tmp_path / "env.db"))
    monkeypatch.setenv(ENV_LOCK_TIMEOUT, "0.25")
    settings = load_settings(None)
    assert settings.database_path == str(tmp_path / "env.db")
    assert settings.locks.timeout_seconds == 0.25


def test_bad_lock_timeout_env(monkeypatch):
    monkeypatch.setenv(ENV_LOCK_TIMEOUT, "soon")
    with pytest.raises(ValueError):
        load_settings(None)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / "absent.yaml"))


def test_non_mapping_root(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(str(path))


def test_invalid_values_fail_fast(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("locks:\n  timeout_seconds: 0\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_settings(str(path))


def test_repository_settings_file_loads():
    settings = load_settings("config/settings.yaml")
    assert settings.logging.level is LogLevel.NORMAL


def test_unknown_log_level_fails_fast(tmp_path):
    path = tmp_path / "loud.yaml"
    path.write_text("logging:\n  level: loud\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_settings(str(path))


def test_log_level_parsed_to_enum(tmp_path):
    path = tmp_path / "detailed.yaml"
    path.write_text("logging:\n  level: detailed\n", encoding="utf-8")
    assert load_settings(str(path)).logging.level is LogLevel.DETAILED
