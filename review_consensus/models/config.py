"""Configuration models loaded from YAML."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from review_consensus.utils.logging_config import LogLevel


class ConsensusPolicy(BaseModel):
    """Per-project screening policy, owned by the project entity."""

    blind_screening: bool = True
    required_reviewers: int = Field(ge=1, default=2)


class LockConfig(BaseModel):
    timeout_seconds: float = Field(gt=0.0, default=5.0)
    sqlite_busy_timeout_ms: int = Field(ge=0, default=5000)


class RetryConfig(BaseModel):
    max_attempts: int = Field(ge=1, le=10, default=3)
    initial_delay: float = Field(ge=0.0, default=0.05)
    max_delay: float = Field(ge=0.0, default=1.0)


class ScreeningConfig(BaseModel):
    require_exclusion_reason: bool = Field(
        default=False,
        description="Reject EXCLUDE decisions that carry no exclusion reason.",
    )
    batch_max_size: int = Field(ge=1, le=1000, default=100)


class LoggingConfig(BaseModel):
    level: LogLevel = LogLevel.NORMAL
    log_file: Optional[str] = None
    structured_log_dir: Optional[str] = None


class EngineSettings(BaseModel):
    database_path: str = "data/review_consensus.db"
    locks: LockConfig = Field(default_factory=LockConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    screening: ScreeningConfig = Field(default_factory=ScreeningConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
