"""
Integration tests for lead batch decisions, phase counts and progress.
"""

import pytest

from review_consensus.errors import ForbiddenError, ValidationError
from review_consensus.models import ConsensusPolicy, ProjectWorkStatus, ScreeningPhase

TA = ScreeningPhase.TITLE_ABSTRACT
FT = ScreeningPhase.FULL_TEXT


@pytest.mark.asyncio
async def test_batch_records_lead_decision_per_study(engine):
    result = await engine.submit_batch("proj-1", "lee", ["pw-1", "pw-2", "pw-1"], TA, "EXCLUDE")
    assert result.processed == ["pw-1", "pw-2"]
    assert result.failed == []
    work = await engine.get_project_work("pw-1")
    assert work.status is ProjectWorkStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_batch_collects_per_study_failures(engine, seed):
    await seed("other", ConsensusPolicy(), ["other-1"])
    await engine.submit_decision("pw-2", TA, "alice", "INCLUDE")
    await engine.submit_decision("pw-2", TA, "bob", "EXCLUDE")

    result = await engine.submit_batch(
        "proj-1", "lee", ["pw-1", "pw-2", "pw-missing", "other-1"], TA, "INCLUDE"
    )
    assert result.processed == ["pw-1"]
    failed = {f.project_work_id: f.error for f in result.failed}
    assert set(failed) == {"pw-2", "pw-missing", "other-1"}
    assert "conflict" in failed["pw-2"]


@pytest.mark.asyncio
async def test_batch_completes_consensus(engine, audit_sink):
    await engine.submit_decision("pw-3", TA, "alice", "EXCLUDE")
    result = await engine.submit_batch("proj-1", "olivia", ["pw-3"], TA, "EXCLUDE")
    assert result.processed == ["pw-3"]
    assert audit_sink.facts[0].actor_id == "olivia"


@pytest.mark.asyncio
async def test_batch_requires_lead_and_size_limits(engine):
    with pytest.raises(ForbiddenError):
        await engine.submit_batch("proj-1", "alice", ["pw-1"], TA, "INCLUDE")
    with pytest.raises(ValidationError):
        await engine.submit_batch("proj-1", "lee", [], TA, "INCLUDE")
    with pytest.raises(ValidationError):
        await engine.submit_batch("proj-1", "lee", [f"pw-{i}" for i in range(101)], TA, "INCLUDE")
    with pytest.raises(ValidationError):
        await engine.submit_batch("proj-1", "lee", ["pw-1"], TA, "NEVER")


@pytest.mark.asyncio
async def test_phase_counts(engine):
    # pw-1 advances, pw-2 excluded, pw-3 in conflict, pw-4 untouched
    await engine.submit_decision("pw-1", TA, "alice", "INCLUDE")
    await engine.submit_decision("pw-1", TA, "bob", "INCLUDE")
    await engine.submit_decision("pw-2", TA, "alice", "EXCLUDE")
    await engine.submit_decision("pw-2", TA, "bob", "EXCLUDE")
    await engine.submit_decision("pw-3", TA, "alice", "INCLUDE")
    await engine.submit_decision("pw-3", TA, "bob", "EXCLUDE")

    counts = await engine.get_phase_counts("proj-1", "oscar")
    assert counts.pending == 2
    assert counts.in_progress == 0
    assert counts.conflict == 1
    assert counts.included_by_phase == {TA: 1, FT: 0}
    assert counts.excluded_by_phase == {TA: 1, FT: 0}


@pytest.mark.asyncio
async def test_phase_progress_blockers(engine):
    await engine.submit_decision("pw-1", TA, "alice", "EXCLUDE")
    await engine.submit_decision("pw-1", TA, "bob", "EXCLUDE")
    await engine.submit_decision("pw-2", TA, "alice", "INCLUDE")
    raised = await engine.submit_decision("pw-2", TA, "bob", "EXCLUDE")

    progress = await engine.get_phase_progress("proj-1", TA, "lee")
    assert progress.total == 4
    assert progress.decided == 1
    assert progress.unresolved_conflicts == 1
    assert progress.awaiting_reviews == 2
    assert progress.percentage == 25
    assert not progress.complete
    assert progress.blockers == ["1 unresolved conflicts", "2 studies need more reviews"]

    await engine.resolve_conflict(raised.conflict_id, "lee", "EXCLUDE")
    for pw in ("pw-3", "pw-4"):
        await engine.submit_decision(pw, TA, "alice", "EXCLUDE")
        await engine.submit_decision(pw, TA, "carol", "EXCLUDE")

    done = await engine.get_phase_progress("proj-1", "TITLE_ABSTRACT", "lee")
    assert done.complete
    assert done.percentage == 100
    assert done.blockers == []


@pytest.mark.asyncio
async def test_empty_phase_progress(engine):
    progress = await engine.get_phase_progress("proj-1", FT, "lee")
    assert progress.total == 0
    assert progress.percentage == 100
    assert not progress.complete
