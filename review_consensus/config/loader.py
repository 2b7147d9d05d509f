"""YAML and env loader with fail-fast validation."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from review_consensus.models import EngineSettings

DEFAULT_SETTINGS_PATH = "config/settings.yaml"

ENV_DB_PATH = "REVIEW_CONSENSUS_DB"
ENV_LOCK_TIMEOUT = "REVIEW_CONSENSUS_LOCK_TIMEOUT"


def _read_yaml(path: str) -> dict:
    resolved = Path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"Missing config file: {path}")
    with resolved.open("r", encoding="utf-8") as file_obj:
        loaded = yaml.safe_load(file_obj) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Expected object at root of YAML file: {path}")
    return loaded


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    db_path = os.getenv(ENV_DB_PATH)
    if db_path:
        raw["database_path"] = db_path
    lock_timeout = os.getenv(ENV_LOCK_TIMEOUT)
    if lock_timeout:
        try:
            timeout = float(lock_timeout)
        except ValueError as exc:
            raise ValueError(f"{ENV_LOCK_TIMEOUT} must be a number, got {lock_timeout!r}") from exc
        raw.setdefault("locks", {})["timeout_seconds"] = timeout
    return raw


def load_settings(settings_path: str | None = DEFAULT_SETTINGS_PATH) -> EngineSettings:
    """Load engine settings from YAML (if given) and the environment.

    Passing ``None`` skips the file and starts from defaults.
    """
    load_dotenv()
    raw = _read_yaml(settings_path) if settings_path is not None else {}
    return EngineSettings.model_validate(_apply_env_overrides(raw))
