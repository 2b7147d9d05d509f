"""Model exports for engine boundaries."""

from review_consensus.models.audit import AuditFact
from review_consensus.models.config import (
    ConsensusPolicy,
    EngineSettings,
    LockConfig,
    LoggingConfig,
    RetryConfig,
    ScreeningConfig,
)
from review_consensus.models.enums import (
    AuditSource,
    ConflictStatus,
    EvaluationOutcome,
    FinalDecision,
    ProjectRole,
    ProjectWorkStatus,
    ScreeningDecisionType,
    ScreeningPhase,
)
from review_consensus.models.progress import ConflictStats, PhaseCounts, PhaseProgress
from review_consensus.models.screening import (
    BatchDecisionResult,
    BatchFailure,
    ConflictRecord,
    ConflictResolution,
    DecisionListing,
    DecisionRecord,
    DecisionSubmission,
    Evaluation,
    ProjectWork,
    ResolutionResult,
    SubmissionResult,
)

__all__ = [
    "AuditFact",
    "AuditSource",
    "BatchDecisionResult",
    "BatchFailure",
    "ConflictRecord",
    "ConflictResolution",
    "ConflictStats",
    "ConflictStatus",
    "ConsensusPolicy",
    "DecisionListing",
    "DecisionRecord",
    "DecisionSubmission",
    "EngineSettings",
    "Evaluation",
    "EvaluationOutcome",
    "FinalDecision",
    "LockConfig",
    "LoggingConfig",
    "PhaseCounts",
    "PhaseProgress",
    "ProjectRole",
    "ProjectWork",
    "ProjectWorkStatus",
    "ResolutionResult",
    "RetryConfig",
    "ScreeningConfig",
    "ScreeningDecisionType",
    "ScreeningPhase",
    "SubmissionResult",
]
