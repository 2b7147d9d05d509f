"""
End-to-end walk through a blind two-reviewer disagreement and its adjudication.
"""

import pytest

from review_consensus.models import (
    AuditSource,
    ConflictStatus,
    EvaluationOutcome,
    FinalDecision,
    ProjectWorkStatus,
    ScreeningPhase,
)


@pytest.mark.asyncio
async def test_disagreement_then_lead_includes(engine, audit_sink):
    TA = ScreeningPhase.TITLE_ABSTRACT

    await engine.submit_decision("pw-1", TA, "alice", "INCLUDE", "On topic")
    blinded = await engine.list_decisions("pw-1", TA, "bob")
    assert blinded.blinded and blinded.decisions == []

    second = await engine.submit_decision("pw-1", TA, "bob", "EXCLUDE", "Wrong population")
    assert second.outcome is EvaluationOutcome.CONFLICT
    assert second.project_work.status is ProjectWorkStatus.CONFLICT
    assert second.project_work.final_decision is None

    resolution = await engine.resolve_conflict(
        second.conflict_id, "lee", FinalDecision.INCLUDE, "Relevant to topic"
    )
    assert resolution.conflict.status is ConflictStatus.RESOLVED
    assert resolution.project_work.phase is ScreeningPhase.FULL_TEXT
    assert resolution.project_work.status is ProjectWorkStatus.PENDING

    assert len(audit_sink.facts) == 1
    fact = audit_sink.facts[0]
    assert fact.source is AuditSource.ADJUDICATION
    assert fact.actor_id == "lee"
    assert fact.phase is TA
    assert fact.decision is FinalDecision.INCLUDE

    # Conflict snapshot is history: both original decisions survive resolution
    conflict = await engine.get_conflict(second.conflict_id, "lee")
    assert sorted(d.reviewer_id for d in conflict.decisions) == ["alice", "bob"]
