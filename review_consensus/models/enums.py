"""Enum definitions for typed screening boundaries."""

from __future__ import annotations

from enum import Enum


class ScreeningPhase(str, Enum):
    TITLE_ABSTRACT = "TITLE_ABSTRACT"
    FULL_TEXT = "FULL_TEXT"

    def next(self) -> ScreeningPhase | None:
        """Phase a study enters after an INCLUDE here, or None for the last phase."""
        if self is ScreeningPhase.TITLE_ABSTRACT:
            return ScreeningPhase.FULL_TEXT
        return None


class ScreeningDecisionType(str, Enum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"
    MAYBE = "MAYBE"


class FinalDecision(str, Enum):
    """Decisions a phase can be finalized with. MAYBE is never final."""

    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


class ProjectWorkStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    CONFLICT = "CONFLICT"
    DECIDED = "DECIDED"

    @property
    def accepts_decisions(self) -> bool:
        return self in (ProjectWorkStatus.PENDING, ProjectWorkStatus.IN_PROGRESS)


class ConflictStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class ProjectRole(str, Enum):
    OWNER = "OWNER"
    LEAD = "LEAD"
    REVIEWER = "REVIEWER"
    OBSERVER = "OBSERVER"

    @property
    def can_screen(self) -> bool:
        return self in (ProjectRole.OWNER, ProjectRole.LEAD, ProjectRole.REVIEWER)

    @property
    def can_adjudicate(self) -> bool:
        return self in (ProjectRole.OWNER, ProjectRole.LEAD)


class AuditSource(str, Enum):
    CONSENSUS = "consensus"
    ADJUDICATION = "adjudication"


class EvaluationOutcome(str, Enum):
    NOT_READY = "NOT_READY"
    CONSENSUS = "CONSENSUS"
    CONFLICT = "CONFLICT"
