"""Typed repositories for screening persistence operations.

Repository methods never commit: callers own the transaction boundary (see
``review_consensus.db.database.transaction``).
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

from review_consensus.models import (
    AuditFact,
    AuditSource,
    ConflictRecord,
    ConflictResolution,
    ConflictStats,
    ConflictStatus,
    ConsensusPolicy,
    DecisionRecord,
    FinalDecision,
    PhaseCounts,
    ProjectRole,
    ProjectWork,
    ProjectWorkStatus,
    ScreeningDecisionType,
    ScreeningPhase,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(raw: Any) -> datetime | None:
    if not raw:
        return None
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_project_work(row: aiosqlite.Row) -> ProjectWork:
    return ProjectWork(
        id=str(row["id"]),
        project_id=str(row["project_id"]),
        work_id=str(row["work_id"]),
        phase=ScreeningPhase(str(row["phase"])),
        status=ProjectWorkStatus(str(row["status"])),
        final_decision=FinalDecision(str(row["final_decision"])) if row["final_decision"] else None,
        finalized_at=_parse_dt(row["finalized_at"]),
    )


def _row_to_decision(row: aiosqlite.Row) -> DecisionRecord:
    return DecisionRecord(
        project_work_id=str(row["project_work_id"]),
        phase=ScreeningPhase(str(row["phase"])),
        reviewer_id=str(row["reviewer_id"]),
        decision=ScreeningDecisionType(str(row["decision"])),
        reasoning=str(row["reasoning"] or ""),
        exclusion_reason=str(row["exclusion_reason"]) if row["exclusion_reason"] else None,
        confidence=int(row["confidence"]) if row["confidence"] is not None else None,
        time_spent_ms=int(row["time_spent_ms"]) if row["time_spent_ms"] is not None else None,
        submitted_at=_parse_dt(row["submitted_at"]),
    )


def _row_to_audit_fact(row: aiosqlite.Row) -> AuditFact:
    return AuditFact(
        project_work_id=str(row["project_work_id"]),
        project_id=str(row["project_id"]),
        phase=ScreeningPhase(str(row["phase"])),
        actor_id=str(row["actor_id"]),
        decision=FinalDecision(str(row["decision"])),
        source=AuditSource(str(row["source"])),
        timestamp=_parse_dt(row["ts"]),
    )


_WORK_COLUMNS = "id, project_id, work_id, phase, status, final_decision, finalized_at"
_DECISION_COLUMNS = (
    "project_work_id, phase, reviewer_id, decision, reasoning, exclusion_reason, "
    "confidence, time_spent_ms, submitted_at"
)


class ProjectRepository:
    """Project, membership and study rows owned by outside collaborators.

    The engine only reads these; the write helpers exist for the import
    pipeline and for seeding.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create_project(
        self,
        project_id: str,
        policy: ConsensusPolicy,
        name: str = "",
    ) -> None:
        await self.db.execute(
            """
            INSERT INTO projects (project_id, name, blind_screening, required_reviewers)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                name=excluded.name,
                blind_screening=excluded.blind_screening,
                required_reviewers=excluded.required_reviewers
            """,
            (project_id, name, 1 if policy.blind_screening else 0, policy.required_reviewers),
        )

    async def get_policy(self, project_id: str) -> Optional[ConsensusPolicy]:
        cursor = await self.db.execute(
            "SELECT blind_screening, required_reviewers FROM projects WHERE project_id = ?",
            (project_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ConsensusPolicy(
            blind_screening=bool(row["blind_screening"]),
            required_reviewers=int(row["required_reviewers"]),
        )

    async def add_member(self, project_id: str, user_id: str, role: ProjectRole) -> None:
        await self.db.execute(
            """
            INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)
            ON CONFLICT(project_id, user_id) DO UPDATE SET role=excluded.role
            """,
            (project_id, user_id, role.value),
        )

    async def get_role(self, project_id: str, user_id: str) -> Optional[ProjectRole]:
        cursor = await self.db.execute(
            "SELECT role FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )
        row = await cursor.fetchone()
        return ProjectRole(str(row["role"])) if row is not None else None

    async def attach_work(
        self, project_id: str, work_id: str, project_work_id: str | None = None
    ) -> ProjectWork:
        """Attach a bibliographic work to a project at TITLE_ABSTRACT / PENDING."""
        work = ProjectWork(
            id=project_work_id or uuid.uuid4().hex,
            project_id=project_id,
            work_id=work_id,
        )
        await self.db.execute(
            """
            INSERT INTO project_works (id, project_id, work_id, phase, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (work.id, work.project_id, work.work_id, work.phase.value, work.status.value),
        )
        return work


class ScreeningRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_project_work(self, project_work_id: str) -> Optional[ProjectWork]:
        cursor = await self.db.execute(
            f"SELECT {_WORK_COLUMNS} FROM project_works WHERE id = ?",
            (project_work_id,),
        )
        row = await cursor.fetchone()
        return _row_to_project_work(row) if row is not None else None

    async def update_project_work(self, work: ProjectWork) -> None:
        await self.db.execute(
            """
            UPDATE project_works
            SET phase = ?, status = ?, final_decision = ?, finalized_at = ?
            WHERE id = ?
            """,
            (
                work.phase.value,
                work.status.value,
                work.final_decision.value if work.final_decision else None,
                _iso(work.finalized_at),
                work.id,
            ),
        )

    async def upsert_decision(self, record: DecisionRecord) -> None:
        await self.db.execute(
            f"""
            INSERT INTO screening_decisions ({_DECISION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_work_id, phase, reviewer_id) DO UPDATE SET
                decision=excluded.decision,
                reasoning=excluded.reasoning,
                exclusion_reason=excluded.exclusion_reason,
                confidence=excluded.confidence,
                time_spent_ms=excluded.time_spent_ms,
                submitted_at=excluded.submitted_at
            """,
            (
                record.project_work_id,
                record.phase.value,
                record.reviewer_id,
                record.decision.value,
                record.reasoning,
                record.exclusion_reason,
                record.confidence,
                record.time_spent_ms,
                _iso(record.submitted_at),
            ),
        )

    async def get_decisions(
        self, project_work_id: str, phase: ScreeningPhase
    ) -> List[DecisionRecord]:
        cursor = await self.db.execute(
            f"""
            SELECT {_DECISION_COLUMNS}
            FROM screening_decisions
            WHERE project_work_id = ? AND phase = ?
            ORDER BY submitted_at, reviewer_id
            """,
            (project_work_id, phase.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_decision(row) for row in rows]

    async def get_decision(
        self, project_work_id: str, phase: ScreeningPhase, reviewer_id: str
    ) -> Optional[DecisionRecord]:
        cursor = await self.db.execute(
            f"""
            SELECT {_DECISION_COLUMNS}
            FROM screening_decisions
            WHERE project_work_id = ? AND phase = ? AND reviewer_id = ?
            """,
            (project_work_id, phase.value, reviewer_id),
        )
        row = await cursor.fetchone()
        return _row_to_decision(row) if row is not None else None

    async def get_status_counts(self, project_id: str) -> Dict[ProjectWorkStatus, int]:
        cursor = await self.db.execute(
            """
            SELECT status, COUNT(*) FROM project_works
            WHERE project_id = ?
            GROUP BY status
            """,
            (project_id,),
        )
        counts = {status: 0 for status in ProjectWorkStatus}
        for status, cnt in await cursor.fetchall():
            counts[ProjectWorkStatus(str(status))] = int(cnt)
        return counts

    async def count_works_in_phase(self, project_id: str, phase: ScreeningPhase) -> int:
        """Studies currently in ``phase`` that have not been finalized there yet."""
        cursor = await self.db.execute(
            """
            SELECT COUNT(*) FROM project_works pw
            WHERE pw.project_id = ? AND pw.phase = ?
              AND NOT EXISTS (
                SELECT 1 FROM audit_events ae
                WHERE ae.project_work_id = pw.id AND ae.phase = pw.phase
              )
            """,
            (project_id, phase.value),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def get_phase_counts(self, project_id: str) -> PhaseCounts:
        statuses = await self.get_status_counts(project_id)
        counts = PhaseCounts(
            pending=statuses[ProjectWorkStatus.PENDING],
            in_progress=statuses[ProjectWorkStatus.IN_PROGRESS],
            conflict=statuses[ProjectWorkStatus.CONFLICT],
        )
        cursor = await self.db.execute(
            """
            SELECT phase, decision, COUNT(*) FROM audit_events
            WHERE project_id = ?
            GROUP BY phase, decision
            """,
            (project_id,),
        )
        for phase, decision, cnt in await cursor.fetchall():
            key = ScreeningPhase(str(phase))
            if decision == FinalDecision.INCLUDE.value:
                counts.included_by_phase[key] = int(cnt)
            else:
                counts.excluded_by_phase[key] = int(cnt)
        return counts


class ConflictRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_pending(
        self, project_work_id: str, phase: ScreeningPhase
    ) -> Optional[ConflictRecord]:
        cursor = await self.db.execute(
            """
            SELECT id FROM conflicts
            WHERE project_work_id = ? AND phase = ? AND status = 'PENDING'
            """,
            (project_work_id, phase.value),
        )
        row = await cursor.fetchone()
        return await self.get(str(row["id"])) if row is not None else None

    async def create(
        self,
        project_id: str,
        project_work_id: str,
        phase: ScreeningPhase,
        decisions: List[DecisionRecord],
    ) -> ConflictRecord:
        conflict = ConflictRecord(
            id=uuid.uuid4().hex,
            project_id=project_id,
            project_work_id=project_work_id,
            phase=phase,
            decisions=decisions,
        )
        await self.db.execute(
            """
            INSERT INTO conflicts (
                id, project_id, project_work_id, phase, status, decisions_snapshot, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict.id,
                conflict.project_id,
                conflict.project_work_id,
                conflict.phase.value,
                conflict.status.value,
                self._dump_snapshot(decisions),
                _iso(conflict.created_at),
            ),
        )
        return conflict

    async def replace_snapshot(self, conflict_id: str, decisions: List[DecisionRecord]) -> None:
        await self.db.execute(
            "UPDATE conflicts SET decisions_snapshot = ? WHERE id = ? AND status = 'PENDING'",
            (self._dump_snapshot(decisions), conflict_id),
        )

    async def mark_resolved(self, conflict_id: str, resolution: ConflictResolution) -> None:
        await self.db.execute(
            """
            INSERT INTO conflict_resolutions (conflict_id, resolver_id, decision, reasoning, resolved_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                conflict_id,
                resolution.resolver_id,
                resolution.decision.value,
                resolution.reasoning,
                _iso(resolution.resolved_at),
            ),
        )
        await self.db.execute(
            "UPDATE conflicts SET status = 'RESOLVED', resolved_at = ? WHERE id = ?",
            (_iso(resolution.resolved_at), conflict_id),
        )

    async def get(self, conflict_id: str) -> Optional[ConflictRecord]:
        cursor = await self.db.execute(
            """
            SELECT c.id, c.project_id, c.project_work_id, c.phase, c.status,
                   c.decisions_snapshot, c.created_at,
                   c.escalated_by, c.escalated_at, c.escalation_reason,
                   r.resolver_id, r.decision AS resolved_decision, r.reasoning, r.resolved_at
            FROM conflicts c
            LEFT JOIN conflict_resolutions r ON r.conflict_id = c.id
            WHERE c.id = ?
            """,
            (conflict_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_conflict(row) if row is not None else None

    async def list_for_project(
        self,
        project_id: str,
        status: ConflictStatus | None = None,
        phase: ScreeningPhase | None = None,
    ) -> List[ConflictRecord]:
        clauses = ["c.project_id = ?"]
        params: list[Any] = [project_id]
        if status is not None:
            clauses.append("c.status = ?")
            params.append(status.value)
        if phase is not None:
            clauses.append("c.phase = ?")
            params.append(phase.value)
        cursor = await self.db.execute(
            f"""
            SELECT c.id, c.project_id, c.project_work_id, c.phase, c.status,
                   c.decisions_snapshot, c.created_at,
                   c.escalated_by, c.escalated_at, c.escalation_reason,
                   r.resolver_id, r.decision AS resolved_decision, r.reasoning, r.resolved_at
            FROM conflicts c
            LEFT JOIN conflict_resolutions r ON r.conflict_id = c.id
            WHERE {" AND ".join(clauses)}
            ORDER BY c.created_at, c.id
            """,
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_conflict(row) for row in rows]

    async def has_conflict(self, project_work_id: str, phase: ScreeningPhase) -> bool:
        """True if any conflict, pending or resolved, was ever raised for the key."""
        cursor = await self.db.execute(
            "SELECT 1 FROM conflicts WHERE project_work_id = ? AND phase = ? LIMIT 1",
            (project_work_id, phase.value),
        )
        return await cursor.fetchone() is not None

    async def count_pending(self, project_id: str, phase: ScreeningPhase) -> int:
        cursor = await self.db.execute(
            "SELECT COUNT(*) FROM conflicts WHERE project_id = ? AND phase = ? AND status = 'PENDING'",
            (project_id, phase.value),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def escalate(
        self, conflict_id: str, escalated_by: str, reason: str, escalated_at: datetime
    ) -> bool:
        """Flag a pending, not yet escalated conflict. Returns False if no row qualified."""
        cursor = await self.db.execute(
            """
            UPDATE conflicts
            SET escalated_by = ?, escalated_at = ?, escalation_reason = ?
            WHERE id = ? AND status = 'PENDING' AND escalated_at IS NULL
            """,
            (escalated_by, _iso(escalated_at), reason, conflict_id),
        )
        return cursor.rowcount == 1

    async def get_stats(self, project_id: str) -> ConflictStats:
        stats = ConflictStats()
        cursor = await self.db.execute(
            """
            SELECT phase, status, escalated_at IS NOT NULL AS escalated, created_at, resolved_at
            FROM conflicts
            WHERE project_id = ?
            """,
            (project_id,),
        )
        durations: List[float] = []
        for row in await cursor.fetchall():
            stats.total += 1
            stats.by_phase[ScreeningPhase(str(row["phase"]))] += 1
            if row["escalated"]:
                stats.escalated += 1
            if row["status"] == ConflictStatus.PENDING.value:
                stats.pending += 1
                continue
            stats.resolved += 1
            created_at = _parse_dt(row["created_at"])
            resolved_at = _parse_dt(row["resolved_at"])
            if created_at is not None and resolved_at is not None:
                durations.append((resolved_at - created_at).total_seconds() * 1000)
        if durations:
            stats.average_resolution_time_ms = sum(durations) / len(durations)
        return stats

    @staticmethod
    def _dump_snapshot(decisions: List[DecisionRecord]) -> str:
        return json.dumps([d.model_dump(mode="json") for d in decisions])

    @staticmethod
    def _row_to_conflict(row: aiosqlite.Row) -> ConflictRecord:
        snapshot = json.loads(row["decisions_snapshot"] or "[]")
        resolution = None
        if row["resolver_id"] is not None:
            resolution = ConflictResolution(
                resolver_id=str(row["resolver_id"]),
                decision=FinalDecision(str(row["resolved_decision"])),
                reasoning=str(row["reasoning"] or ""),
                resolved_at=_parse_dt(row["resolved_at"]),
            )
        return ConflictRecord(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            project_work_id=str(row["project_work_id"]),
            phase=ScreeningPhase(str(row["phase"])),
            status=ConflictStatus(str(row["status"])),
            decisions=[DecisionRecord.model_validate(item) for item in snapshot],
            resolution=resolution,
            created_at=_parse_dt(row["created_at"]),
            escalated_by=row["escalated_by"],
            escalated_at=_parse_dt(row["escalated_at"]),
            escalation_reason=row["escalation_reason"],
        )


class AuditRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def append(self, fact: AuditFact) -> None:
        await self.db.execute(
            """
            INSERT INTO audit_events (project_id, project_work_id, phase, actor_id, decision, source, ts)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact.project_id,
                fact.project_work_id,
                fact.phase.value,
                fact.actor_id,
                fact.decision.value,
                fact.source.value,
                _iso(fact.timestamp),
            ),
        )

    async def get_for_phase(
        self, project_work_id: str, phase: ScreeningPhase
    ) -> Optional[AuditFact]:
        cursor = await self.db.execute(
            """
            SELECT project_id, project_work_id, phase, actor_id, decision, source, ts
            FROM audit_events
            WHERE project_work_id = ? AND phase = ?
            """,
            (project_work_id, phase.value),
        )
        row = await cursor.fetchone()
        return _row_to_audit_fact(row) if row is not None else None

    async def list_for_work(self, project_work_id: str) -> List[AuditFact]:
        cursor = await self.db.execute(
            """
            SELECT project_id, project_work_id, phase, actor_id, decision, source, ts
            FROM audit_events
            WHERE project_work_id = ?
            ORDER BY id
            """,
            (project_work_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_audit_fact(row) for row in rows]

    async def count_for_phase(self, project_id: str, phase: ScreeningPhase) -> int:
        cursor = await self.db.execute(
            "SELECT COUNT(*) FROM audit_events WHERE project_id = ? AND phase = ?",
            (project_id, phase.value),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0
