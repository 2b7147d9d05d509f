"""Structured logging for a machine-parseable screening audit trail."""

from __future__ import annotations

import json
from pathlib import Path
from typing import IO, Any

import structlog
from structlog.processors import JSONRenderer
from structlog.typing import Processor

from review_consensus.models import AuditFact, ConflictRecord, DecisionRecord, EvaluationOutcome

_configured = False
_logger: structlog.BoundLogger | None = None
_file_handle: IO[str] | None = None


def configure_structured_logging(log_dir: str) -> Path:
    """One-time setup. Writes JSON lines to {log_dir}/audit.jsonl."""
    global _configured, _logger, _file_handle
    app_log_path = Path(log_dir) / "audit.jsonl"
    if _configured:
        return app_log_path
    app_log_path.parent.mkdir(parents=True, exist_ok=True)
    _file_handle = open(app_log_path, "a", encoding="utf-8")
    file_handle = _file_handle

    def _file_logger_factory(*args: Any, **kwargs: Any) -> structlog.PrintLogger:
        return structlog.PrintLogger(file_handle)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        JSONRenderer(),
    ]
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=_file_logger_factory,
        cache_logger_on_first_use=True,
    )
    _configured = True
    _logger = structlog.get_logger()
    return app_log_path


def reset_structured_logging() -> None:
    """Close the JSONL sink so a later call can reconfigure it."""
    global _configured, _logger, _file_handle
    if _file_handle is not None:
        _file_handle.close()
    _file_handle = None
    _logger = None
    _configured = False
    structlog.reset_defaults()


def log_screening_decision(decision: DecisionRecord, outcome: EvaluationOutcome) -> None:
    """Log a reviewer decision with the evaluation it triggered.

    Reasoning text is left out: the ledger is the system of record for it.
    """
    if _logger is not None:
        _logger.info(
            "screening_decision",
            project_work_id=decision.project_work_id,
            phase=decision.phase.value,
            reviewer_id=decision.reviewer_id,
            decision=decision.decision.value,
            outcome=outcome.value,
        )


def log_conflict_event(conflict: ConflictRecord, action: str) -> None:
    """Log conflict lifecycle (action: created|updated|resolved|escalated)."""
    if _logger is None:
        return
    payload: dict[str, Any] = {
        "conflict_id": conflict.id,
        "project_work_id": conflict.project_work_id,
        "phase": conflict.phase.value,
        "action": action,
        "reviewers": [d.reviewer_id for d in conflict.decisions],
    }
    if conflict.resolution is not None:
        payload["resolver_id"] = conflict.resolution.resolver_id
        payload["decision"] = conflict.resolution.decision.value
    if conflict.escalated_by is not None:
        payload["escalated_by"] = conflict.escalated_by
        payload["escalation_reason"] = conflict.escalation_reason
    _logger.info("conflict", **payload)


def log_audit_fact(fact: AuditFact) -> None:
    if _logger is not None:
        _logger.info("phase_finalized", **fact.model_dump(mode="json"))


def log_contention(project_work_id: str, phase: str, waited_s: float) -> None:
    if _logger is not None:
        _logger.warning(
            "lock_contention", project_work_id=project_work_id, phase=phase, waited_s=round(waited_s, 3)
        )


def load_events_from_jsonl(path: str) -> list[dict[str, Any]]:
    """Read an audit.jsonl file, skipping lines that fail to parse."""
    result: list[dict[str, Any]] = []
    try:
        with open(path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    result.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    except OSError:
        pass
    return result
