"""Aggregate counts consumed by reporting collaborators."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from review_consensus.models.enums import ScreeningPhase


class PhaseCounts(BaseModel):
    pending: int = 0
    in_progress: int = 0
    conflict: int = 0
    included_by_phase: Dict[ScreeningPhase, int] = Field(
        default_factory=lambda: {phase: 0 for phase in ScreeningPhase}
    )
    excluded_by_phase: Dict[ScreeningPhase, int] = Field(
        default_factory=lambda: {phase: 0 for phase in ScreeningPhase}
    )


class PhaseProgress(BaseModel):
    phase: ScreeningPhase
    total: int
    decided: int
    unresolved_conflicts: int
    awaiting_reviews: int
    percentage: int
    complete: bool
    blockers: List[str] = Field(default_factory=list)


class ConflictStats(BaseModel):
    total: int = 0
    pending: int = 0
    resolved: int = 0
    escalated: int = 0
    by_phase: Dict[ScreeningPhase, int] = Field(
        default_factory=lambda: {phase: 0 for phase in ScreeningPhase}
    )
    # Mean of resolved_at - created_at over resolved conflicts; None until one is resolved
    average_resolution_time_ms: Optional[float] = None
