"""
Integration tests for conflict detection and adjudication.
"""

import pytest

from review_consensus.errors import (
    ConflictAlreadyResolvedError,
    ForbiddenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from review_consensus.models import (
    AuditSource,
    ConflictStatus,
    EvaluationOutcome,
    FinalDecision,
    ProjectWorkStatus,
    ScreeningPhase,
)

TA = ScreeningPhase.TITLE_ABSTRACT
FT = ScreeningPhase.FULL_TEXT


async def _raise_conflict(engine, project_work_id="pw-1", first="INCLUDE", second="EXCLUDE"):
    await engine.submit_decision(project_work_id, TA, "alice", first)
    return await engine.submit_decision(project_work_id, TA, "bob", second)


@pytest.mark.asyncio
async def test_disagreement_raises_conflict(engine, audit_sink):
    result = await _raise_conflict(engine)
    assert result.outcome is EvaluationOutcome.CONFLICT
    assert result.project_work.status is ProjectWorkStatus.CONFLICT
    assert result.conflict_id is not None
    assert audit_sink.facts == []

    conflict = await engine.get_conflict(result.conflict_id, "lee")
    assert conflict.status is ConflictStatus.PENDING
    assert {(d.reviewer_id, d.decision.value) for d in conflict.decisions} == {
        ("alice", "INCLUDE"),
        ("bob", "EXCLUDE"),
    }


@pytest.mark.asyncio
async def test_all_maybe_is_a_conflict(engine):
    result = await _raise_conflict(engine, first="MAYBE", second="MAYBE")
    assert result.outcome is EvaluationOutcome.CONFLICT


@pytest.mark.asyncio
async def test_conflict_locks_further_decisions(engine):
    await _raise_conflict(engine)
    with pytest.raises(StateError):
        await engine.submit_decision("pw-1", TA, "alice", "EXCLUDE")
    with pytest.raises(StateError):
        await engine.submit_decision("pw-1", TA, "carol", "INCLUDE")


@pytest.mark.asyncio
async def test_resolution_include_advances_phase(engine, audit_sink):
    raised = await _raise_conflict(engine)
    resolution = await engine.resolve_conflict(raised.conflict_id, "lee", "INCLUDE", "Meets criteria")

    assert resolution.conflict.status is ConflictStatus.RESOLVED
    assert resolution.conflict.resolution.resolver_id == "lee"
    assert resolution.project_work.phase is FT
    assert resolution.project_work.status is ProjectWorkStatus.PENDING
    assert resolution.audit_fact.source is AuditSource.ADJUDICATION
    assert audit_sink.facts == [resolution.audit_fact]

    stored = await engine.get_conflict(raised.conflict_id, "olivia")
    assert stored.resolution.reasoning == "Meets criteria"


@pytest.mark.asyncio
async def test_resolution_exclude_is_terminal(engine):
    raised = await _raise_conflict(engine)
    resolution = await engine.resolve_conflict(raised.conflict_id, "olivia", FinalDecision.EXCLUDE)
    work = resolution.project_work
    assert work.status is ProjectWorkStatus.DECIDED
    assert work.final_decision is FinalDecision.EXCLUDE


@pytest.mark.asyncio
async def test_conflict_resolves_exactly_once(engine, audit_sink):
    raised = await _raise_conflict(engine)
    await engine.resolve_conflict(raised.conflict_id, "lee", "INCLUDE")
    with pytest.raises(ConflictAlreadyResolvedError):
        await engine.resolve_conflict(raised.conflict_id, "olivia", "EXCLUDE")
    assert len(audit_sink.facts) == 1
    assert len(await engine.get_audit_trail("pw-1", "lee")) == 1


@pytest.mark.asyncio
async def test_maybe_is_not_a_resolution(engine):
    raised = await _raise_conflict(engine)
    with pytest.raises(ValidationError):
        await engine.resolve_conflict(raised.conflict_id, "lee", "MAYBE")
    with pytest.raises(ValidationError):
        await engine.resolve_conflict(raised.conflict_id, "lee", "SOMETIMES")


@pytest.mark.asyncio
async def test_only_adjudicators_resolve_or_preview(engine):
    raised = await _raise_conflict(engine)
    with pytest.raises(ForbiddenError):
        await engine.resolve_conflict(raised.conflict_id, "alice", "INCLUDE")
    with pytest.raises(ForbiddenError):
        await engine.get_conflict(raised.conflict_id, "carol")
    with pytest.raises(ForbiddenError):
        await engine.resolve_conflict(raised.conflict_id, "mallory", "INCLUDE")


@pytest.mark.asyncio
async def test_unknown_conflict(engine):
    with pytest.raises(NotFoundError):
        await engine.resolve_conflict("nope", "lee", "INCLUDE")
    with pytest.raises(NotFoundError):
        await engine.get_conflict("nope", "lee")


@pytest.mark.asyncio
async def test_new_conflict_in_next_phase(engine):
    raised = await _raise_conflict(engine)
    await engine.resolve_conflict(raised.conflict_id, "lee", "INCLUDE")
    await engine.submit_decision("pw-1", FT, "alice", "INCLUDE")
    second = await engine.submit_decision("pw-1", FT, "carol", "MAYBE")
    assert second.outcome is EvaluationOutcome.CONFLICT
    assert second.conflict_id != raised.conflict_id

    pending = await engine.list_conflicts("proj-1", "lee", status="PENDING")
    assert [c.id for c in pending] == [second.conflict_id]
    full_text = await engine.list_conflicts("proj-1", "alice", phase=FT)
    assert [c.phase for c in full_text] == [FT]
    everything = await engine.list_conflicts("proj-1", "oscar")
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_list_conflicts_validates_filters(engine):
    with pytest.raises(ValidationError):
        await engine.list_conflicts("proj-1", "lee", status="OPEN")
    with pytest.raises(ForbiddenError):
        await engine.list_conflicts("proj-1", "mallory")
