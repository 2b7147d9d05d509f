"""FastAPI surface over the screening consensus engine.

Run with:
    uvicorn review_consensus.web.app:app --port ${PORT:-8001}

Identity is passed explicitly in the ``X-User-Id`` header; session handling
belongs to the gateway in front of this service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from review_consensus.config.loader import load_settings
from review_consensus.db.database import Database
from review_consensus.errors import (
    ConsensusError,
    InvariantViolation,
    UnauthorizedError,
    ValidationError,
)
from review_consensus.models import (
    AuditFact,
    BatchDecisionResult,
    ConflictRecord,
    ConflictStats,
    DecisionListing,
    EngineSettings,
    FinalDecision,
    PhaseCounts,
    PhaseProgress,
    ResolutionResult,
    ScreeningDecisionType,
    ScreeningPhase,
    SubmissionResult,
)
from review_consensus.screening.collaborators import LoggingAuditSink, SqliteProjectDirectory
from review_consensus.screening.engine import ScreeningConsensusEngine
from review_consensus.utils.retry_strategies import call_with_contention_retry
from review_consensus.utils.structured_log import configure_structured_logging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class DecisionRequest(BaseModel):
    phase: ScreeningPhase
    decision: ScreeningDecisionType
    reasoning: str = Field(default="", max_length=2000)
    exclusion_reason: Optional[str] = Field(default=None, max_length=500)
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    time_spent_ms: Optional[int] = Field(default=None, gt=0)


class BatchDecisionRequest(BaseModel):
    project_work_ids: List[str] = Field(min_length=1)
    phase: ScreeningPhase
    decision: ScreeningDecisionType
    reasoning: str = Field(default="", max_length=2000)


class ResolveRequest(BaseModel):
    decision: FinalDecision
    reasoning: str = Field(default="", max_length=2000)


class EscalateRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise UnauthorizedError()
    return x_user_id


def build_engine(settings: EngineSettings) -> ScreeningConsensusEngine:
    """Engine wired to the SQLite-backed project directory."""
    database = Database(settings.database_path, settings.locks.sqlite_busy_timeout_ms)
    directory = SqliteProjectDirectory(database)
    return ScreeningConsensusEngine(
        database, directory, directory, audit_sinks=[LoggingAuditSink()], settings=settings
    )


def create_app(engine: ScreeningConsensusEngine | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if getattr(app.state, "engine", None) is None:
            app.state.engine = build_engine(load_settings())
        structured_log_dir = app.state.engine.settings.logging.structured_log_dir
        if structured_log_dir:
            audit_path = configure_structured_logging(structured_log_dir)
            logger.info(f"Structured audit log at {audit_path}")
        await app.state.engine.database.initialize()
        yield

    app = FastAPI(title="Screening Consensus Engine", lifespan=lifespan)
    app.state.engine = engine

    def get_engine(request: Request) -> ScreeningConsensusEngine:
        return request.app.state.engine

    @app.exception_handler(ConsensusError)
    async def consensus_error_handler(_request: Request, exc: ConsensusError) -> JSONResponse:
        if isinstance(exc, InvariantViolation):
            logger.critical(f"Invariant violation surfaced to API: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid value')}"
            for err in exc.errors()
        )
        error = ValidationError(details or "Invalid request")
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.get("/api/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/works/{project_work_id}/decisions", status_code=201, response_model=SubmissionResult)
    async def submit_decision(
        project_work_id: str,
        body: DecisionRequest,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> SubmissionResult:
        return await call_with_contention_retry(
            engine.submit_decision,
            project_work_id,
            body.phase,
            user_id,
            body.decision,
            body.reasoning,
            exclusion_reason=body.exclusion_reason,
            confidence=body.confidence,
            time_spent_ms=body.time_spent_ms,
            config=engine.settings.retry,
        )

    @app.get("/api/works/{project_work_id}/decisions", response_model=DecisionListing)
    async def list_decisions(
        project_work_id: str,
        phase: ScreeningPhase,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> DecisionListing:
        return await engine.list_decisions(project_work_id, phase, user_id)

    @app.get("/api/works/{project_work_id}/audit", response_model=List[AuditFact])
    async def audit_trail(
        project_work_id: str,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> List[AuditFact]:
        return await engine.get_audit_trail(project_work_id, user_id)

    @app.post("/api/projects/{project_id}/decisions/batch", response_model=BatchDecisionResult)
    async def submit_batch(
        project_id: str,
        body: BatchDecisionRequest,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> BatchDecisionResult:
        return await engine.submit_batch(
            project_id, user_id, body.project_work_ids, body.phase, body.decision, body.reasoning
        )

    @app.get("/api/projects/{project_id}/conflicts", response_model=List[ConflictRecord])
    async def list_conflicts(
        project_id: str,
        status: Optional[str] = None,
        phase: Optional[ScreeningPhase] = None,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> List[ConflictRecord]:
        return await engine.list_conflicts(project_id, user_id, status=status, phase=phase)

    @app.get("/api/projects/{project_id}/conflicts/stats", response_model=ConflictStats)
    async def conflict_stats(
        project_id: str,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> ConflictStats:
        return await engine.get_conflict_stats(project_id, user_id)

    @app.get("/api/conflicts/{conflict_id}", response_model=ConflictRecord)
    async def get_conflict(
        conflict_id: str,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> ConflictRecord:
        return await engine.get_conflict(conflict_id, user_id)

    @app.post("/api/conflicts/{conflict_id}/resolve", response_model=ResolutionResult)
    async def resolve_conflict(
        conflict_id: str,
        body: ResolveRequest,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> ResolutionResult:
        return await call_with_contention_retry(
            engine.resolve_conflict,
            conflict_id,
            user_id,
            body.decision,
            body.reasoning,
            config=engine.settings.retry,
        )

    @app.post("/api/conflicts/{conflict_id}/escalate", response_model=ConflictRecord)
    async def escalate_conflict(
        conflict_id: str,
        body: EscalateRequest,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> ConflictRecord:
        return await call_with_contention_retry(
            engine.escalate_conflict,
            conflict_id,
            user_id,
            body.reason,
            config=engine.settings.retry,
        )

    @app.get("/api/projects/{project_id}/phase-counts", response_model=PhaseCounts)
    async def phase_counts(
        project_id: str,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> PhaseCounts:
        return await engine.get_phase_counts(project_id, user_id)

    @app.get("/api/projects/{project_id}/progress/{phase}", response_model=PhaseProgress)
    async def phase_progress(
        project_id: str,
        phase: ScreeningPhase,
        user_id: str = Depends(current_user),
        engine: ScreeningConsensusEngine = Depends(get_engine),
    ) -> PhaseProgress:
        return await engine.get_phase_progress(project_id, phase, user_id)

    return app


app = create_app()
