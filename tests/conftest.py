"""
Pytest configuration and fixtures.
"""

from typing import Dict, List

import pytest
import pytest_asyncio

from review_consensus.db.database import Database
from review_consensus.db.repositories import ProjectRepository
from review_consensus.models import (
    ConsensusPolicy,
    EngineSettings,
    LockConfig,
    ProjectRole,
    RetryConfig,
)
from review_consensus.screening.collaborators import CollectingAuditSink, SqliteProjectDirectory
from review_consensus.screening.engine import ScreeningConsensusEngine

PROJECT_ID = "proj-1"

MEMBERS: Dict[str, ProjectRole] = {
    "olivia": ProjectRole.OWNER,
    "lee": ProjectRole.LEAD,
    "alice": ProjectRole.REVIEWER,
    "bob": ProjectRole.REVIEWER,
    "carol": ProjectRole.REVIEWER,
    "oscar": ProjectRole.OBSERVER,
}

WORK_IDS: List[str] = ["pw-1", "pw-2", "pw-3", "pw-4"]


async def _seed_project(
    database: Database,
    project_id: str,
    policy: ConsensusPolicy,
    work_ids: List[str],
    members: Dict[str, ProjectRole] = MEMBERS,
) -> None:
    """Insert a project with members and studies attached at TITLE_ABSTRACT."""
    async with database.connect() as db:
        repo = ProjectRepository(db)
        await repo.create_project(project_id, policy, name=f"Review {project_id}")
        for user_id, role in members.items():
            await repo.add_member(project_id, user_id, role)
        for project_work_id in work_ids:
            await repo.attach_work(project_id, f"work-{project_work_id}", project_work_id)


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    """Settings pointing at a throwaway database with short lock timeouts."""
    return EngineSettings(
        database_path=str(tmp_path / "screening.db"),
        locks=LockConfig(timeout_seconds=2.0, sqlite_busy_timeout_ms=2000),
        retry=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.01),
    )


@pytest_asyncio.fixture
async def database(settings) -> Database:
    db = Database(settings.database_path, settings.locks.sqlite_busy_timeout_ms)
    await db.initialize()
    return db


@pytest.fixture
def audit_sink() -> CollectingAuditSink:
    return CollectingAuditSink()


@pytest.fixture
def seed(database):
    """Factory for extra projects: ``await seed(project_id, policy, work_ids)``."""

    async def _seed(project_id, policy, work_ids, members=MEMBERS):
        await _seed_project(database, project_id, policy, work_ids, members)

    return _seed


@pytest_asyncio.fixture
async def engine(database, settings, audit_sink) -> ScreeningConsensusEngine:
    """Engine over a blind, two-reviewer project with four studies."""
    await _seed_project(database, PROJECT_ID, ConsensusPolicy(), WORK_IDS)
    directory = SqliteProjectDirectory(database)
    return ScreeningConsensusEngine(
        database, directory, directory, audit_sinks=[audit_sink], settings=settings
    )
