"""Conflict detection over one (study, phase) page of the decision ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, assert_never

import aiosqlite

from review_consensus.db.repositories import ConflictRepository, ScreeningRepository
from review_consensus.models import (
    AuditFact,
    AuditSource,
    ConflictRecord,
    ConsensusPolicy,
    DecisionRecord,
    Evaluation,
    EvaluationOutcome,
    FinalDecision,
    ProjectWork,
    ProjectWorkStatus,
    ScreeningDecisionType,
)
from review_consensus.screening.phase_controller import PhaseController

logger = logging.getLogger(__name__)


def as_final_decision(decision: ScreeningDecisionType) -> Optional[FinalDecision]:
    """Map a reviewer decision onto a finalizable one. MAYBE has no final form."""
    if decision is ScreeningDecisionType.INCLUDE:
        return FinalDecision.INCLUDE
    if decision is ScreeningDecisionType.EXCLUDE:
        return FinalDecision.EXCLUDE
    if decision is ScreeningDecisionType.MAYBE:
        return None
    assert_never(decision)


def evaluate_decisions(
    decisions: Sequence[DecisionRecord], required_reviewers: int
) -> Evaluation:
    """Classify a ledger page as not ready, consensus or conflict.

    Pure: no storage access. A unanimous MAYBE pool is a conflict, since MAYBE
    can never be a final decision.
    """
    reviewers = {d.reviewer_id for d in decisions}
    count = len(reviewers)
    if count < required_reviewers:
        return Evaluation(
            outcome=EvaluationOutcome.NOT_READY, decision_count=count, required=required_reviewers
        )
    values = {d.decision for d in decisions}
    if len(values) == 1:
        final = as_final_decision(next(iter(values)))
        if final is not None:
            return Evaluation(
                outcome=EvaluationOutcome.CONSENSUS,
                decision=final,
                decision_count=count,
                required=required_reviewers,
            )
    return Evaluation(
        outcome=EvaluationOutcome.CONFLICT, decision_count=count, required=required_reviewers
    )


@dataclass
class Detection:
    evaluation: Evaluation
    project_work: ProjectWork
    conflict: Optional[ConflictRecord] = None
    conflict_created: bool = False
    audit_fact: Optional[AuditFact] = None


class ConflictDetector:
    """Re-evaluates a key right after a decision upsert, inside the same transaction."""

    def __init__(self, phase_controller: PhaseController):
        self.phase_controller = phase_controller

    async def evaluate(
        self,
        db: aiosqlite.Connection,
        work: ProjectWork,
        policy: ConsensusPolicy,
        actor_id: str,
    ) -> Detection:
        screening = ScreeningRepository(db)
        decisions = await screening.get_decisions(work.id, work.phase)
        evaluation = evaluate_decisions(decisions, policy.required_reviewers)
        outcome = evaluation.outcome

        if outcome is EvaluationOutcome.NOT_READY:
            if work.status is ProjectWorkStatus.PENDING:
                work = work.model_copy(update={"status": ProjectWorkStatus.IN_PROGRESS})
                await screening.update_project_work(work)
            logger.debug(
                f"{work.id}/{work.phase.value}: {evaluation.decision_count}"
                f"/{evaluation.required} decisions, waiting for reviewers"
            )
            return Detection(evaluation=evaluation, project_work=work)

        if outcome is EvaluationOutcome.CONSENSUS:
            assert evaluation.decision is not None
            finalized = await self.phase_controller.finalize(
                db,
                work,
                work.phase,
                evaluation.decision,
                actor_id=actor_id,
                source=AuditSource.CONSENSUS,
            )
            return Detection(
                evaluation=evaluation,
                project_work=finalized.project_work,
                audit_fact=finalized.audit_fact,
            )

        if outcome is EvaluationOutcome.CONFLICT:
            conflicts = ConflictRepository(db)
            existing = await conflicts.get_pending(work.id, work.phase)
            if existing is not None:
                await conflicts.replace_snapshot(existing.id, decisions)
                conflict = existing.model_copy(update={"decisions": decisions})
                created = False
            else:
                conflict = await conflicts.create(work.project_id, work.id, work.phase, decisions)
                created = True
            work = work.model_copy(update={"status": ProjectWorkStatus.CONFLICT})
            await screening.update_project_work(work)
            logger.info(
                f"Conflict {'raised' if created else 'updated'} for {work.id}/{work.phase.value} "
                f"({', '.join(sorted(d.decision.value for d in decisions))})"
            )
            return Detection(
                evaluation=evaluation,
                project_work=work,
                conflict=conflict,
                conflict_created=created,
            )

        assert_never(outcome)
