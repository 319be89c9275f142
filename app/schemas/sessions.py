"""
Pydantic request/response schemas for the /api/v1/sessions and
/api/v1/approvals endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.models.enums import DecisionType, FixType
from app.schemas.imports import (
    ApprovalDecision,
    ApprovalRequest,
    FieldMapping,
    ImportSession,
    MappingMetadata,
    SourceFieldDescriptor,
    TargetField,
)


# ── Request Schemas ──────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    file_name: str
    file_type: Optional[str] = None
    owner: Optional[str] = None
    entity_type: str = "product"
    batch_size: Optional[int] = Field(default=None, ge=1, le=10_000)
    auto_advance_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class MapFieldsRequest(BaseModel):
    """Either full target field definitions or bare names; neither means the product schema."""
    target_fields: Optional[list[TargetField]] = None
    target_field_names: Optional[list[str]] = None
    use_external: Optional[bool] = None
    use_historical: bool = True
    min_confidence: Optional[int] = Field(default=None, ge=0, le=100)


class ExecuteRequest(BaseModel):
    skip_errors: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=10_000)
    approved_fix_types: list[FixType] = []


class DecisionRequest(BaseModel):
    approver: str
    decision: DecisionType
    reasoning: Optional[str] = None
    delegate_to: Optional[str] = None


# ── Response Schemas ─────────────────────────────────────────

class CreateSessionResponse(BaseModel):
    session_id: str
    status: str


class AnalyzeResponse(BaseModel):
    session_id: str
    fields: list[SourceFieldDescriptor]
    sample_rows: list[dict[str, Any]]
    total_records: int
    headerless: bool
    confidence: float
    corrupted_rows: int


class MapFieldsResponse(BaseModel):
    session_id: str
    mappings: list[FieldMapping]
    metadata: MappingMetadata


class PreviewResponse(BaseModel):
    session_id: str
    valid_rows: list[dict[str, Any]]
    error_rows: list[dict[str, Any]]
    fixes: list[dict[str, Any]]
    statistics: dict[str, Any]


class ExecuteResponse(BaseModel):
    session_id: str
    accepted: bool
    status: str
    approval_request_id: Optional[str] = None


class SessionStatusResponse(BaseModel):
    session_id: str
    status: str
    progress: dict[str, Any]
    aggregate_confidence: Optional[float] = None
    approval_request_id: Optional[str] = None
    next_action: dict[str, str]
    results: dict[str, Any] = {}
    cost: dict[str, Any] = {}
    error_log: list[dict[str, Any]] = []
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class CancelResponse(BaseModel):
    session_id: str
    status: str


class DecisionResponse(BaseModel):
    decision: ApprovalDecision
    request: ApprovalRequest
    session_status: str


class ApprovalQueueResponse(BaseModel):
    pending: list[ApprovalRequest]
    stats: dict[str, Any]
    calibration: dict[str, Any]


def session_status_response(status: dict) -> SessionStatusResponse:
    session: ImportSession = status["session"]
    results = status["results"]
    return SessionStatusResponse(
        session_id=status["session_id"],
        status=status["status"],
        progress=status["progress"],
        aggregate_confidence=status["aggregate_confidence"],
        approval_request_id=status["approval_request_id"],
        next_action=status["next_action"],
        results={
            "validation": results.get("validation"),
            "commit": results.get("commit"),
        },
        cost=status["cost"],
        error_log=status["error_log"],
        created_at=session.created_at,
        updated_at=session.updated_at,
        completed_at=session.completed_at,
    )
