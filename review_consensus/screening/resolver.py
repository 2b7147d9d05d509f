"""Adjudication of pending conflicts by a project lead."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from review_consensus.db.repositories import ConflictRepository, ScreeningRepository
from review_consensus.errors import (
    ConflictAlreadyResolvedError,
    InvariantViolation,
    NotFoundError,
)
from review_consensus.models import (
    AuditFact,
    AuditSource,
    ConflictRecord,
    ConflictResolution,
    ConflictStatus,
    FinalDecision,
    ProjectWork,
    ProjectWorkStatus,
)
from review_consensus.screening.phase_controller import PhaseController

logger = logging.getLogger(__name__)


@dataclass
class Adjudication:
    conflict: ConflictRecord
    project_work: ProjectWork
    audit_fact: Optional[AuditFact] = None


class ConflictResolver:
    def __init__(self, phase_controller: PhaseController):
        self.phase_controller = phase_controller

    async def resolve(
        self,
        db: aiosqlite.Connection,
        conflict_id: str,
        resolver_id: str,
        decision: FinalDecision,
        reasoning: str = "",
    ) -> Adjudication:
        """Resolve a PENDING conflict exactly once and finalize its phase.

        Caller holds the conflict's (study, phase) key and the transaction.
        """
        conflicts = ConflictRepository(db)
        conflict = await conflicts.get(conflict_id)
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        if conflict.status is ConflictStatus.RESOLVED:
            raise ConflictAlreadyResolvedError(conflict_id)

        work = await ScreeningRepository(db).get_project_work(conflict.project_work_id)
        if work is None:
            raise NotFoundError("Study", conflict.project_work_id)
        if work.phase != conflict.phase or work.status is not ProjectWorkStatus.CONFLICT:
            message = (
                f"Conflict {conflict_id} is pending but study {work.id} is "
                f"{work.status.value} in {work.phase.value}"
            )
            logger.critical(message)
            raise InvariantViolation(message)

        resolution = ConflictResolution(
            resolver_id=resolver_id, decision=decision, reasoning=reasoning
        )
        await conflicts.mark_resolved(conflict_id, resolution)
        finalized = await self.phase_controller.finalize(
            db,
            work,
            conflict.phase,
            decision,
            actor_id=resolver_id,
            source=AuditSource.ADJUDICATION,
        )
        resolved = conflict.model_copy(
            update={"status": ConflictStatus.RESOLVED, "resolution": resolution}
        )
        logger.info(f"Conflict {conflict_id} resolved as {decision.value} by {resolver_id}")
        return Adjudication(
            conflict=resolved,
            project_work=finalized.project_work,
            audit_fact=finalized.audit_fact,
        )
