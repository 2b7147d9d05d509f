"""Error kinds raised by the consensus engine.

Every error carries a stable ``code`` and an ``http_status`` so outer surfaces
can map it without inspecting the type. All of them are recoverable by the
caller except :class:`InvariantViolation`.
"""

from __future__ import annotations


class ConsensusError(Exception):
    code = "CONSENSUS_ERROR"
    http_status = 500
    retriable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(ConsensusError):
    code = "VALIDATION_ERROR"
    http_status = 422


class UnauthorizedError(ConsensusError):
    code = "UNAUTHORIZED"
    http_status = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(ConsensusError):
    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(ConsensusError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, identifier: str | None = None):
        message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message)
        self.resource = resource


class StateError(ConsensusError):
    code = "STATE_ERROR"
    http_status = 409


class ConflictAlreadyResolvedError(StateError):
    code = "CONFLICT_ALREADY_RESOLVED"

    def __init__(self, conflict_id: str):
        super().__init__(f"Conflict {conflict_id} has already been resolved")
        self.conflict_id = conflict_id


class ContentionError(ConsensusError):
    """Per-key exclusion could not be acquired in time. Safe to retry."""

    code = "CONTENDED"
    http_status = 503
    retriable = True


class InvariantViolation(ConsensusError):
    """Two different finalized decisions were observed for the same key."""

    code = "INVARIANT_VIOLATION"
    http_status = 500
