"""
Unit tests for study lifecycle transitions.
"""

from datetime import datetime, timezone

from review_consensus.models import (
    FinalDecision,
    ProjectWork,
    ProjectWorkStatus,
    ScreeningPhase,
)
from review_consensus.screening.phase_controller import next_state

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _work(phase: ScreeningPhase, status: ProjectWorkStatus = ProjectWorkStatus.IN_PROGRESS) -> ProjectWork:
    return ProjectWork(id="pw-1", project_id="proj-1", work_id="w-1", phase=phase, status=status)


def test_exclude_is_terminal_in_any_phase():
    for phase in ScreeningPhase:
        updated = next_state(_work(phase), FinalDecision.EXCLUDE, NOW)
        assert updated.status is ProjectWorkStatus.DECIDED
        assert updated.final_decision is FinalDecision.EXCLUDE
        assert updated.finalized_at == NOW
        assert updated.phase is phase


def test_include_at_title_abstract_advances():
    updated = next_state(
        _work(ScreeningPhase.TITLE_ABSTRACT, ProjectWorkStatus.CONFLICT), FinalDecision.INCLUDE, NOW
    )
    assert updated.phase is ScreeningPhase.FULL_TEXT
    assert updated.status is ProjectWorkStatus.PENDING
    assert updated.final_decision is None
    assert updated.finalized_at is None


def test_include_at_full_text_is_terminal():
    updated = next_state(_work(ScreeningPhase.FULL_TEXT), FinalDecision.INCLUDE, NOW)
    assert updated.status is ProjectWorkStatus.DECIDED
    assert updated.final_decision is FinalDecision.INCLUDE
    assert updated.is_terminal


def test_next_state_does_not_mutate_input():
    work = _work(ScreeningPhase.TITLE_ABSTRACT)
    next_state(work, FinalDecision.INCLUDE, NOW)
    assert work.phase is ScreeningPhase.TITLE_ABSTRACT
    assert work.status is ProjectWorkStatus.IN_PROGRESS
