"""Decision ledger: one decision per (study, phase, reviewer), with blind reads."""

from __future__ import annotations

import logging

import aiosqlite

from review_consensus.db.repositories import (
    AuditRepository,
    ConflictRepository,
    ScreeningRepository,
)
from review_consensus.errors import StateError, ValidationError
from review_consensus.models import (
    ConsensusPolicy,
    DecisionListing,
    DecisionRecord,
    DecisionSubmission,
    ProjectWork,
    ProjectWorkStatus,
    ScreeningConfig,
    ScreeningDecisionType,
    ScreeningPhase,
)

logger = logging.getLogger(__name__)


class DecisionLedger:
    def __init__(self, config: ScreeningConfig | None = None):
        self.config = config or ScreeningConfig()

    def check_submission(self, submission: DecisionSubmission) -> None:
        """Policy checks that need no storage access."""
        if (
            self.config.require_exclusion_reason
            and submission.decision is ScreeningDecisionType.EXCLUDE
            and not (submission.exclusion_reason or "").strip()
        ):
            raise ValidationError("Exclusion reason is required when excluding a study")

    async def record(
        self,
        db: aiosqlite.Connection,
        work: ProjectWork,
        submission: DecisionSubmission,
    ) -> DecisionRecord:
        """Upsert the reviewer's decision. Caller holds the key and the transaction."""
        if submission.phase != work.phase:
            raise StateError(
                f"Study {work.id} is in phase {work.phase.value}; "
                f"decisions for {submission.phase.value} are not accepted"
            )
        if not work.status.accepts_decisions:
            if work.status is ProjectWorkStatus.CONFLICT:
                raise StateError(
                    f"Study {work.id} has an unresolved conflict in {work.phase.value}; "
                    "decisions are locked until it is adjudicated"
                )
            raise StateError(f"Study {work.id} is already decided in {work.phase.value}")

        screening = ScreeningRepository(db)
        previous = await screening.get_decision(work.id, work.phase, submission.reviewer_id)
        record = submission.to_record()
        await screening.upsert_decision(record)
        if previous is not None:
            logger.info(
                f"Reviewer {record.reviewer_id} replaced {previous.decision.value} with "
                f"{record.decision.value} on {work.id}/{work.phase.value}"
            )
        return record

    async def visible_decisions(
        self,
        db: aiosqlite.Connection,
        work: ProjectWork,
        phase: ScreeningPhase,
        requester_id: str,
        policy: ConsensusPolicy,
    ) -> DecisionListing:
        """Decisions the requester may see for (work, phase).

        Under blind screening, peers' decisions stay hidden until the requester
        has submitted their own. A raised conflict or a finalized phase also
        lifts the blind.
        """
        decisions = await ScreeningRepository(db).get_decisions(work.id, phase)
        visible = (
            not policy.blind_screening
            or any(d.reviewer_id == requester_id for d in decisions)
            or await ConflictRepository(db).has_conflict(work.id, phase)
            or await AuditRepository(db).get_for_phase(work.id, phase) is not None
        )
        return DecisionListing(
            project_work_id=work.id,
            phase=phase,
            blinded=not visible,
            decisions=decisions if visible else [],
        )
