"""Study lifecycle: finalization, phase advancement and phase progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, assert_never

import aiosqlite

from review_consensus.db.repositories import (
    AuditRepository,
    ConflictRepository,
    ScreeningRepository,
)
from review_consensus.errors import InvariantViolation, StateError
from review_consensus.models import (
    AuditFact,
    AuditSource,
    FinalDecision,
    PhaseProgress,
    ProjectWork,
    ProjectWorkStatus,
    ScreeningPhase,
)

logger = logging.getLogger(__name__)


@dataclass
class Finalization:
    project_work: ProjectWork
    audit_fact: Optional[AuditFact] = None


def next_state(work: ProjectWork, final_decision: FinalDecision, now: datetime) -> ProjectWork:
    """ProjectWork after finalizing its current phase with ``final_decision``."""
    if final_decision is FinalDecision.EXCLUDE:
        return work.model_copy(
            update={
                "status": ProjectWorkStatus.DECIDED,
                "final_decision": FinalDecision.EXCLUDE,
                "finalized_at": now,
            }
        )
    if final_decision is FinalDecision.INCLUDE:
        following = work.phase.next()
        if following is None:
            return work.model_copy(
                update={
                    "status": ProjectWorkStatus.DECIDED,
                    "final_decision": FinalDecision.INCLUDE,
                    "finalized_at": now,
                }
            )
        # A fresh ledger page opens for the next phase
        return work.model_copy(
            update={
                "phase": following,
                "status": ProjectWorkStatus.PENDING,
                "final_decision": None,
                "finalized_at": None,
            }
        )
    assert_never(final_decision)


class PhaseController:
    """Sole writer of ProjectWork lifecycle state."""

    async def finalize(
        self,
        db: aiosqlite.Connection,
        work: ProjectWork,
        phase: ScreeningPhase,
        final_decision: FinalDecision,
        *,
        actor_id: str,
        source: AuditSource,
    ) -> Finalization:
        """Commit the definitive decision for ``phase`` and move the study on.

        Finalizing a phase twice with the same decision is a no-op; with a
        different decision it raises InvariantViolation.
        """
        audit = AuditRepository(db)
        previous = await audit.get_for_phase(work.id, phase)
        if previous is not None:
            if previous.decision == final_decision:
                logger.info(f"{work.id}/{phase.value} already finalized as {final_decision.value}")
                return Finalization(project_work=work)
            self._report_violation(work, phase, previous.decision, final_decision)

        if work.phase != phase:
            raise StateError(
                f"Cannot finalize {phase.value} for study {work.id}: current phase is {work.phase.value}"
            )
        if work.status is ProjectWorkStatus.DECIDED:
            if work.final_decision == final_decision:
                return Finalization(project_work=work)
            self._report_violation(work, phase, work.final_decision, final_decision)

        now = datetime.now(timezone.utc)
        updated = next_state(work, final_decision, now)
        fact = AuditFact(
            project_work_id=work.id,
            project_id=work.project_id,
            phase=phase,
            actor_id=actor_id,
            decision=final_decision,
            source=source,
            timestamp=now,
        )
        await ScreeningRepository(db).update_project_work(updated)
        await audit.append(fact)

        if updated.phase != phase:
            logger.info(f"{work.id} advanced {phase.value} -> {updated.phase.value}")
        else:
            logger.info(f"{work.id} finalized at {phase.value}: {final_decision.value}")
        return Finalization(project_work=updated, audit_fact=fact)

    @staticmethod
    def _report_violation(
        work: ProjectWork,
        phase: ScreeningPhase,
        existing: Optional[FinalDecision],
        attempted: FinalDecision,
    ) -> None:
        message = (
            f"Study {work.id} phase {phase.value} already finalized as "
            f"{existing.value if existing else 'unknown'}; refusing {attempted.value}"
        )
        logger.critical(message)
        raise InvariantViolation(message)

    async def phase_progress(
        self, db: aiosqlite.Connection, project_id: str, phase: ScreeningPhase
    ) -> PhaseProgress:
        decided = await AuditRepository(db).count_for_phase(project_id, phase)
        open_in_phase = await ScreeningRepository(db).count_works_in_phase(project_id, phase)
        unresolved = await ConflictRepository(db).count_pending(project_id, phase)
        total = decided + open_in_phase
        awaiting = max(0, open_in_phase - unresolved)

        blockers: List[str] = []
        if unresolved > 0:
            blockers.append(f"{unresolved} unresolved conflicts")
        if awaiting > 0:
            blockers.append(f"{awaiting} studies need more reviews")

        percentage = round(decided / total * 100) if total > 0 else 100
        return PhaseProgress(
            phase=phase,
            total=total,
            decided=decided,
            unresolved_conflicts=unresolved,
            awaiting_reviews=awaiting,
            percentage=percentage,
            complete=not blockers and total > 0,
            blockers=blockers,
        )
