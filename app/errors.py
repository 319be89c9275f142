"""
Error taxonomy for the import engine.

Every error carries an ``error_code`` for logs and API responses, and a
``fatal`` flag: fatal errors move the owning session to FAILED, everything
else is recorded on the session and the workflow carries on.
"""

from typing import Optional


class ImportEngineError(Exception):
    """Base class for all import engine errors."""

    error_code: str = "ERR_IMPORT"
    fatal: bool = False

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)


# ── Input ────────────────────────────────────────────────────

class ParseError(ImportEngineError):
    """File could not be read at all."""
    error_code = "ERR_PARSE"
    fatal = True


class MalformedInputError(ParseError):
    """Structured content (JSON) is not parseable or has the wrong shape."""
    error_code = "ERR_MALFORMED_INPUT"


class EmptyInputError(ImportEngineError):
    """Zero parseable records."""
    error_code = "ERR_EMPTY_INPUT"
    fatal = True


class ValidationError(ImportEngineError):
    """A row failed validation against the target schema."""
    error_code = "ERR_VALIDATION"

    def __init__(self, message: str, row_index: int, field: str):
        self.row_index = row_index
        self.field = field
        super().__init__(message)


# ── Mapping ──────────────────────────────────────────────────

class MappingAmbiguityWarning(UserWarning):
    """Two candidate targets for a source field scored almost the same."""

    def __init__(self, source_field: str, candidates: list[str], margin: int):
        self.source_field = source_field
        self.candidates = candidates
        self.margin = margin
        super().__init__(
            f"Ambiguous mapping for '{source_field}': {candidates} within {margin} points"
        )


class CostLimitExceeded(ImportEngineError):
    """Session classifier budget would be exceeded by another call."""
    error_code = "ERR_COST_LIMIT"

    def __init__(self, session_id: str, spent_usd: float, ceiling_usd: float):
        self.session_id = session_id
        self.spent_usd = spent_usd
        self.ceiling_usd = ceiling_usd
        super().__init__(
            f"Classifier budget exhausted for session {session_id}: "
            f"spent ${spent_usd:.6f} of ${ceiling_usd:.6f}"
        )


# ── Approval ─────────────────────────────────────────────────

class ApprovalNotFoundError(ImportEngineError):
    error_code = "ERR_APPROVAL_NOT_FOUND"


class AlreadyResolvedError(ImportEngineError):
    """A decision was submitted for a request that is no longer pending."""
    error_code = "ERR_ALREADY_RESOLVED"


class UnauthorizedApproverError(ImportEngineError):
    error_code = "ERR_UNAUTHORIZED_APPROVER"


class EscalationExhaustedError(ImportEngineError):
    error_code = "ERR_NO_ESCALATION_PATH"


class ApprovalTimeoutError(ImportEngineError):
    """Approval deadline passed without a decision."""
    error_code = "ERR_APPROVAL_TIMEOUT"


# ── Workflow ─────────────────────────────────────────────────

class SessionNotFoundError(ImportEngineError):
    error_code = "ERR_SESSION_NOT_FOUND"


class SessionCancelledError(ImportEngineError):
    """The session was cancelled while work was in flight."""
    error_code = "ERR_CANCELLED"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} was cancelled")


class InvalidTransitionError(ImportEngineError):
    error_code = "ERR_INVALID_TRANSITION"

    def __init__(self, session_id: str, from_status: str, to_status: str):
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Session {session_id} cannot move from {from_status} to {to_status}"
        )


# ── Batch Commit ─────────────────────────────────────────────

class BatchWriteFailure(ImportEngineError):
    """A whole chunk failed to persist. Retried with backoff."""
    error_code = "ERR_BATCH_WRITE"

    def __init__(self, message: str, batch_number: Optional[int] = None):
        self.batch_number = batch_number
        super().__init__(message)


class RecordWriteError(ImportEngineError):
    """A single record was rejected by the writer."""
    error_code = "ERR_RECORD_WRITE"

    def __init__(self, message: str, record_index: int):
        self.record_index = record_index
        super().__init__(message)
