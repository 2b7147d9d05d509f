"""Audit facts emitted once per phase finalization."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from review_consensus.models.enums import AuditSource, FinalDecision, ScreeningPhase


class AuditFact(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_work_id: str
    project_id: str
    phase: ScreeningPhase
    actor_id: str
    decision: FinalDecision
    source: AuditSource
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
