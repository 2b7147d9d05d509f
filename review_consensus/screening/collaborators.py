"""Interfaces to the collaborators the engine consumes, with local implementations.

None of these are called inside a per-key critical section: policy and role
lookups happen before the lock is taken, audit publication after commit.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Tuple

from review_consensus.db.database import Database
from review_consensus.db.repositories import ProjectRepository
from review_consensus.models import AuditFact, ConflictRecord, ConsensusPolicy, ProjectRole
from review_consensus.utils.structured_log import log_audit_fact

logger = logging.getLogger(__name__)


class ProjectConfigProvider(Protocol):
    async def get_policy(self, project_id: str) -> Optional[ConsensusPolicy]:
        """Return the project's screening policy, or None for an unknown project."""


class MembershipProvider(Protocol):
    async def get_role(self, project_id: str, user_id: str) -> Optional[ProjectRole]:
        """Return the user's role in the project, or None if not a member."""


class AuditSink(Protocol):
    async def publish(self, fact: AuditFact) -> None:
        """Deliver one committed audit fact to an activity or notification feed."""

    async def notify_escalation(self, conflict: ConflictRecord) -> None:
        """Tell the project leads that a pending conflict was escalated."""


class StaticProjectDirectory:
    """In-memory policy and membership lookups."""

    def __init__(
        self,
        policies: Dict[str, ConsensusPolicy] | None = None,
        roles: Dict[Tuple[str, str], ProjectRole] | None = None,
    ):
        self.policies: Dict[str, ConsensusPolicy] = dict(policies or {})
        self.roles: Dict[Tuple[str, str], ProjectRole] = dict(roles or {})

    def add_project(self, project_id: str, policy: ConsensusPolicy) -> None:
        self.policies[project_id] = policy

    def add_member(self, project_id: str, user_id: str, role: ProjectRole) -> None:
        self.roles[(project_id, user_id)] = role

    async def get_policy(self, project_id: str) -> Optional[ConsensusPolicy]:
        return self.policies.get(project_id)

    async def get_role(self, project_id: str, user_id: str) -> Optional[ProjectRole]:
        return self.roles.get((project_id, user_id))


class SqliteProjectDirectory:
    """Reads policy and membership from the ``projects``/``project_members`` tables."""

    def __init__(self, database: Database):
        self.database = database

    async def get_policy(self, project_id: str) -> Optional[ConsensusPolicy]:
        async with self.database.connect() as db:
            return await ProjectRepository(db).get_policy(project_id)

    async def get_role(self, project_id: str, user_id: str) -> Optional[ProjectRole]:
        async with self.database.connect() as db:
            return await ProjectRepository(db).get_role(project_id, user_id)


class LoggingAuditSink:
    """Writes each fact to the structured audit log."""

    async def publish(self, fact: AuditFact) -> None:
        log_audit_fact(fact)
        logger.info(
            f"Finalized {fact.project_work_id} at {fact.phase.value}: "
            f"{fact.decision.value} ({fact.source.value} by {fact.actor_id})"
        )

    async def notify_escalation(self, conflict: ConflictRecord) -> None:
        logger.warning(
            f"Conflict {conflict.id} on {conflict.project_work_id} at {conflict.phase.value} "
            f"escalated by {conflict.escalated_by}: {conflict.escalation_reason}"
        )


class CollectingAuditSink:
    """Keeps published facts in memory."""

    def __init__(self) -> None:
        self.facts: List[AuditFact] = []
        self.escalations: List[ConflictRecord] = []

    async def publish(self, fact: AuditFact) -> None:
        self.facts.append(fact)

    async def notify_escalation(self, conflict: ConflictRecord) -> None:
        self.escalations.append(conflict)
