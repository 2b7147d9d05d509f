"""Screening consensus engine: the entry point collaborators call.

Every write runs as one unit of work scoped by (project_work_id, phase): the
per-key lock is taken, then a BEGIN IMMEDIATE transaction covers the decision
upsert, conflict evaluation and any finalization. Policy and role lookups
happen before the lock; audit publication happens after commit.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, List, Optional, Sequence

import aiosqlite
import pydantic

from review_consensus.db.database import Database, transaction
from review_consensus.db.repositories import (
    AuditRepository,
    ConflictRepository,
    ScreeningRepository,
)
from review_consensus.errors import (
    ConflictAlreadyResolvedError,
    ContentionError,
    ForbiddenError,
    NotFoundError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from review_consensus.models import (
    AuditFact,
    BatchDecisionResult,
    BatchFailure,
    ConflictRecord,
    ConflictStats,
    ConflictStatus,
    ConsensusPolicy,
    DecisionListing,
    DecisionSubmission,
    EngineSettings,
    FinalDecision,
    PhaseCounts,
    PhaseProgress,
    ProjectRole,
    ProjectWork,
    ResolutionResult,
    ScreeningDecisionType,
    ScreeningPhase,
    SubmissionResult,
)
from review_consensus.screening.collaborators import (
    AuditSink,
    MembershipProvider,
    ProjectConfigProvider,
)
from review_consensus.screening.detector import ConflictDetector
from review_consensus.screening.ledger import DecisionLedger
from review_consensus.screening.locks import KeyedLockRegistry
from review_consensus.screening.phase_controller import PhaseController
from review_consensus.screening.resolver import ConflictResolver
from review_consensus.utils.structured_log import log_conflict_event, log_screening_decision

logger = logging.getLogger(__name__)

_MAX_REASONING = 2000
_MAX_ESCALATION_REASON = 500


def _validation_message(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


def parse_phase(phase: ScreeningPhase | str) -> ScreeningPhase:
    try:
        return ScreeningPhase(phase)
    except ValueError:
        raise ValidationError(f"Unknown screening phase: {phase!r}") from None


def parse_resolution_decision(decision: FinalDecision | ScreeningDecisionType | str) -> FinalDecision:
    """Resolvers must commit to INCLUDE or EXCLUDE."""
    raw = decision.value if isinstance(decision, (FinalDecision, ScreeningDecisionType)) else str(decision)
    if raw == ScreeningDecisionType.MAYBE.value:
        raise ValidationError("MAYBE is not a valid resolution; choose INCLUDE or EXCLUDE")
    try:
        return FinalDecision(raw)
    except ValueError:
        raise ValidationError(f"Unknown decision: {raw!r}") from None


class ScreeningConsensusEngine:
    def __init__(
        self,
        database: Database,
        config_provider: ProjectConfigProvider,
        membership: MembershipProvider,
        audit_sinks: Iterable[AuditSink] = (),
        settings: EngineSettings | None = None,
    ):
        self.database = database
        self.config_provider = config_provider
        self.membership = membership
        self.audit_sinks: List[AuditSink] = list(audit_sinks)
        self.settings = settings or EngineSettings()
        self.locks = KeyedLockRegistry(default_timeout=self.settings.locks.timeout_seconds)
        self.phase_controller = PhaseController()
        self.ledger = DecisionLedger(self.settings.screening)
        self.detector = ConflictDetector(self.phase_controller)
        self.resolver = ConflictResolver(self.phase_controller)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        config_provider: ProjectConfigProvider,
        membership: MembershipProvider,
        audit_sinks: Iterable[AuditSink] = (),
    ) -> ScreeningConsensusEngine:
        database = Database(settings.database_path, settings.locks.sqlite_busy_timeout_ms)
        return cls(database, config_provider, membership, audit_sinks, settings)

    # ------------------------------------------------------------------
    # Decision ledger
    # ------------------------------------------------------------------

    async def submit_decision(
        self,
        project_work_id: str,
        phase: ScreeningPhase | str,
        reviewer_id: str,
        decision: ScreeningDecisionType | str,
        reasoning: str = "",
        *,
        exclusion_reason: Optional[str] = None,
        confidence: Optional[int] = None,
        time_spent_ms: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> SubmissionResult:
        """Record a reviewer's decision and evaluate consensus atomically with it."""
        if not reviewer_id:
            raise UnauthorizedError()
        try:
            submission = DecisionSubmission(
                project_work_id=project_work_id,
                phase=phase,
                reviewer_id=reviewer_id,
                decision=decision,
                reasoning=reasoning or "",
                exclusion_reason=exclusion_reason,
                confidence=confidence,
                time_spent_ms=time_spent_ms,
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(_validation_message(exc)) from exc
        return await self._submit(submission, timeout=timeout)

    async def _submit(
        self,
        submission: DecisionSubmission,
        *,
        expected_project_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> SubmissionResult:
        self.ledger.check_submission(submission)
        work = await self._load_work(submission.project_work_id)
        if expected_project_id is not None and work.project_id != expected_project_id:
            raise NotFoundError("Study", submission.project_work_id)
        await self._require_role(work.project_id, submission.reviewer_id, adjudicate=False)
        policy = await self._load_policy(work.project_id)

        async with self._unit_of_work(work.id, submission.phase, timeout) as db:
            current = await ScreeningRepository(db).get_project_work(work.id)
            if current is None:
                raise NotFoundError("Study", work.id)
            record = await self.ledger.record(db, current, submission)
            detection = await self.detector.evaluate(db, current, policy, submission.reviewer_id)

        log_screening_decision(record, detection.evaluation.outcome)
        if detection.conflict is not None:
            log_conflict_event(detection.conflict, "created" if detection.conflict_created else "updated")
        await self._publish(detection.audit_fact)
        return SubmissionResult(
            outcome=detection.evaluation.outcome,
            project_work=detection.project_work,
            decision=record,
            conflict_id=detection.conflict.id if detection.conflict else None,
            audit_fact=detection.audit_fact,
        )

    async def submit_batch(
        self,
        project_id: str,
        lead_id: str,
        project_work_ids: Sequence[str],
        phase: ScreeningPhase | str,
        decision: ScreeningDecisionType | str,
        reasoning: str = "",
        *,
        timeout: Optional[float] = None,
    ) -> BatchDecisionResult:
        """Record the lead's decision on many studies, one key at a time.

        Per-study state, lookup and contention failures are collected rather than
        aborting the batch.
        """
        if not lead_id:
            raise UnauthorizedError()
        await self._require_role(project_id, lead_id, adjudicate=True)
        limit = self.settings.screening.batch_max_size
        if not project_work_ids or len(project_work_ids) > limit:
            raise ValidationError(f"Batch must contain between 1 and {limit} studies")

        result = BatchDecisionResult()
        for project_work_id in dict.fromkeys(project_work_ids):
            try:
                submission = DecisionSubmission(
                    project_work_id=project_work_id,
                    phase=phase,
                    reviewer_id=lead_id,
                    decision=decision,
                    reasoning=reasoning or "",
                )
            except pydantic.ValidationError as exc:
                raise ValidationError(_validation_message(exc)) from exc
            try:
                await self._submit(submission, expected_project_id=project_id, timeout=timeout)
            except (StateError, NotFoundError, ContentionError) as exc:
                result.failed.append(BatchFailure(project_work_id=project_work_id, error=exc.message))
            else:
                result.processed.append(project_work_id)
        logger.info(
            f"Batch {parse_phase(phase).value} by {lead_id}: {len(result.processed)} processed, {len(result.failed)} failed"
        )
        return result

    async def list_decisions(
        self,
        project_work_id: str,
        phase: ScreeningPhase | str,
        requesting_reviewer_id: str,
    ) -> DecisionListing:
        if not requesting_reviewer_id:
            raise UnauthorizedError()
        phase = parse_phase(phase)
        work = await self._load_work(project_work_id)
        await self._require_member(work.project_id, requesting_reviewer_id)
        policy = await self._load_policy(work.project_id)
        async with self.database.connect() as db:
            async with transaction(db, write=False):
                return await self.ledger.visible_decisions(
                    db, work, phase, requesting_reviewer_id, policy
                )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolver_id: str,
        decision: FinalDecision | ScreeningDecisionType | str,
        reasoning: str = "",
        *,
        timeout: Optional[float] = None,
    ) -> ResolutionResult:
        if not resolver_id:
            raise UnauthorizedError()
        final = parse_resolution_decision(decision)
        reasoning = reasoning or ""
        if len(reasoning) > _MAX_REASONING:
            raise ValidationError(f"reasoning: must be at most {_MAX_REASONING} characters")

        conflict = await self._load_conflict(conflict_id)
        await self._require_role(conflict.project_id, resolver_id, adjudicate=True)

        async with self._unit_of_work(conflict.project_work_id, conflict.phase, timeout) as db:
            adjudication = await self.resolver.resolve(db, conflict_id, resolver_id, final, reasoning)

        log_conflict_event(adjudication.conflict, "resolved")
        await self._publish(adjudication.audit_fact)
        return ResolutionResult(
            conflict=adjudication.conflict,
            project_work=adjudication.project_work,
            audit_fact=adjudication.audit_fact,
        )

    async def escalate_conflict(
        self,
        conflict_id: str,
        user_id: str,
        reason: str,
        *,
        timeout: Optional[float] = None,
    ) -> ConflictRecord:
        """Flag a pending conflict for the project leads. A conflict escalates once."""
        if not user_id:
            raise UnauthorizedError()
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason: an escalation reason is required")
        if len(reason) > _MAX_ESCALATION_REASON:
            raise ValidationError(f"reason: must be at most {_MAX_ESCALATION_REASON} characters")

        conflict = await self._load_conflict(conflict_id)
        await self._require_member(conflict.project_id, user_id)

        async with self._unit_of_work(conflict.project_work_id, conflict.phase, timeout) as db:
            conflicts = ConflictRepository(db)
            flagged = await conflicts.escalate(conflict_id, user_id, reason, datetime.now(timezone.utc))
            current = await conflicts.get(conflict_id)
            if current is None:
                raise NotFoundError("Conflict", conflict_id)
            if not flagged:
                if current.status != ConflictStatus.PENDING:
                    raise ConflictAlreadyResolvedError(conflict_id)
                raise StateError(
                    f"Conflict {conflict_id} was already escalated by {current.escalated_by}"
                )

        log_conflict_event(current, "escalated")
        await self._notify_escalation(current)
        return current

    async def get_conflict(self, conflict_id: str, requesting_user_id: str) -> ConflictRecord:
        """Adjudicator preview: every decision is visible regardless of blinding."""
        if not requesting_user_id:
            raise UnauthorizedError()
        conflict = await self._load_conflict(conflict_id)
        await self._require_role(conflict.project_id, requesting_user_id, adjudicate=True)
        return conflict

    async def list_conflicts(
        self,
        project_id: str,
        requesting_user_id: str,
        status: ConflictStatus | str | None = None,
        phase: ScreeningPhase | str | None = None,
    ) -> List[ConflictRecord]:
        if not requesting_user_id:
            raise UnauthorizedError()
        await self._require_member(project_id, requesting_user_id)
        try:
            status_filter = ConflictStatus(status) if status is not None else None
        except ValueError:
            raise ValidationError(f"Unknown conflict status: {status!r}") from None
        phase_filter = parse_phase(phase) if phase is not None else None
        async with self.database.connect() as db:
            return await ConflictRepository(db).list_for_project(
                project_id, status=status_filter, phase=phase_filter
            )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_phase_counts(self, project_id: str, requesting_user_id: str) -> PhaseCounts:
        await self._require_project_member(project_id, requesting_user_id)
        async with self.database.connect() as db:
            async with transaction(db, write=False):
                return await ScreeningRepository(db).get_phase_counts(project_id)

    async def get_phase_progress(
        self, project_id: str, phase: ScreeningPhase | str, requesting_user_id: str
    ) -> PhaseProgress:
        phase = parse_phase(phase)
        await self._require_project_member(project_id, requesting_user_id)
        async with self.database.connect() as db:
            async with transaction(db, write=False):
                return await self.phase_controller.phase_progress(db, project_id, phase)

    async def get_conflict_stats(self, project_id: str, requesting_user_id: str) -> ConflictStats:
        await self._require_project_member(project_id, requesting_user_id)
        async with self.database.connect() as db:
            async with transaction(db, write=False):
                return await ConflictRepository(db).get_stats(project_id)

    async def get_audit_trail(self, project_work_id: str, requesting_user_id: str) -> List[AuditFact]:
        if not requesting_user_id:
            raise UnauthorizedError()
        work = await self._load_work(project_work_id)
        await self._require_member(work.project_id, requesting_user_id)
        async with self.database.connect() as db:
            return await AuditRepository(db).list_for_work(project_work_id)

    async def get_project_work(self, project_work_id: str) -> ProjectWork:
        return await self._load_work(project_work_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _unit_of_work(
        self, project_work_id: str, phase: ScreeningPhase, timeout: Optional[float]
    ) -> AsyncIterator[aiosqlite.Connection]:
        async with self.locks.acquire(project_work_id, phase, timeout):
            async with self.database.connect() as db:
                try:
                    async with transaction(db):
                        yield db
                except sqlite3.IntegrityError as exc:
                    # Uniqueness constraints back up the per-key lock
                    logger.error(f"Integrity check failed for {project_work_id}/{phase.value}: {exc}")
                    raise StateError(
                        f"Concurrent update rejected for study {project_work_id} in {phase.value}"
                    ) from exc
                except sqlite3.OperationalError as exc:
                    if "locked" in str(exc) or "busy" in str(exc):
                        raise ContentionError("Database is busy; retry the operation") from exc
                    raise

    async def _publish(self, fact: Optional[AuditFact]) -> None:
        if fact is None:
            return
        for sink in self.audit_sinks:
            try:
                await sink.publish(fact)
            except Exception:
                # The fact is already committed in audit_events; delivery is best effort
                logger.exception(
                    f"Audit sink {type(sink).__name__} failed for {fact.project_work_id}/{fact.phase.value}"
                )

    async def _notify_escalation(self, conflict: ConflictRecord) -> None:
        for sink in self.audit_sinks:
            try:
                await sink.notify_escalation(conflict)
            except Exception:
                logger.exception(
                    f"Audit sink {type(sink).__name__} failed to deliver escalation of conflict {conflict.id}"
                )

    async def _load_work(self, project_work_id: str) -> ProjectWork:
        async with self.database.connect() as db:
            work = await ScreeningRepository(db).get_project_work(project_work_id)
        if work is None:
            raise NotFoundError("Study", project_work_id)
        return work

    async def _load_conflict(self, conflict_id: str) -> ConflictRecord:
        async with self.database.connect() as db:
            conflict = await ConflictRepository(db).get(conflict_id)
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        return conflict

    async def _load_policy(self, project_id: str) -> ConsensusPolicy:
        policy = await self.config_provider.get_policy(project_id)
        if policy is None:
            raise NotFoundError("Project", project_id)
        return policy

    async def _require_member(self, project_id: str, user_id: str) -> ProjectRole:
        role = await self.membership.get_role(project_id, user_id)
        if role is None:
            raise ForbiddenError(f"User {user_id} is not a member of project {project_id}")
        return role

    async def _require_project_member(self, project_id: str, user_id: str) -> ProjectRole:
        """Unknown projects are NotFound before membership is checked."""
        if not user_id:
            raise UnauthorizedError()
        await self._load_policy(project_id)
        return await self._require_member(project_id, user_id)

    async def _require_role(self, project_id: str, user_id: str, *, adjudicate: bool) -> ProjectRole:
        role = await self._require_member(project_id, user_id)
        if adjudicate and not role.can_adjudicate:
            raise ForbiddenError("Only project leads or owners can perform this action")
        if not adjudicate and not role.can_screen:
            raise ForbiddenError("You don't have permission to screen studies in this project")
        return role
