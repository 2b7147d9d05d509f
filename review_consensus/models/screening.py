"""Screening ledger, conflict and submission models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from review_consensus.models.audit import AuditFact
from review_consensus.models.enums import (
    ConflictStatus,
    EvaluationOutcome,
    FinalDecision,
    ProjectWorkStatus,
    ScreeningDecisionType,
    ScreeningPhase,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectWork(BaseModel):
    id: str
    project_id: str
    work_id: str
    phase: ScreeningPhase = ScreeningPhase.TITLE_ABSTRACT
    status: ProjectWorkStatus = ProjectWorkStatus.PENDING
    final_decision: Optional[FinalDecision] = None
    finalized_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status == ProjectWorkStatus.DECIDED


class DecisionRecord(BaseModel):
    project_work_id: str
    phase: ScreeningPhase
    reviewer_id: str
    decision: ScreeningDecisionType
    reasoning: str = ""
    exclusion_reason: Optional[str] = None
    confidence: Optional[int] = None
    time_spent_ms: Optional[int] = None
    submitted_at: datetime = Field(default_factory=_utcnow)


class DecisionSubmission(BaseModel):
    """Validated reviewer input for one (study, phase)."""

    project_work_id: str = Field(min_length=1)
    phase: ScreeningPhase
    reviewer_id: str = Field(min_length=1)
    decision: ScreeningDecisionType
    reasoning: str = Field(default="", max_length=2000)
    exclusion_reason: Optional[str] = Field(default=None, max_length=500)
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    time_spent_ms: Optional[int] = Field(default=None, gt=0)

    def to_record(self) -> DecisionRecord:
        return DecisionRecord(**self.model_dump())


class ConflictResolution(BaseModel):
    resolver_id: str
    decision: FinalDecision
    reasoning: str = ""
    resolved_at: datetime = Field(default_factory=_utcnow)


class ConflictRecord(BaseModel):
    id: str
    project_id: str
    project_work_id: str
    phase: ScreeningPhase
    status: ConflictStatus = ConflictStatus.PENDING
    decisions: List[DecisionRecord] = Field(default_factory=list)
    resolution: Optional[ConflictResolution] = None
    created_at: datetime = Field(default_factory=_utcnow)
    escalated_by: Optional[str] = None
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None


class Evaluation(BaseModel):
    outcome: EvaluationOutcome
    decision: Optional[FinalDecision] = None
    decision_count: int = 0
    required: int = 1


class SubmissionResult(BaseModel):
    outcome: EvaluationOutcome
    project_work: ProjectWork
    decision: DecisionRecord
    conflict_id: Optional[str] = None
    audit_fact: Optional[AuditFact] = None


class ResolutionResult(BaseModel):
    conflict: ConflictRecord
    project_work: ProjectWork
    audit_fact: Optional[AuditFact] = None


class DecisionListing(BaseModel):
    project_work_id: str
    phase: ScreeningPhase
    blinded: bool
    decisions: List[DecisionRecord] = Field(default_factory=list)


class BatchFailure(BaseModel):
    project_work_id: str
    error: str


class BatchDecisionResult(BaseModel):
    processed: List[str] = Field(default_factory=list)
    failed: List[BatchFailure] = Field(default_factory=list)
