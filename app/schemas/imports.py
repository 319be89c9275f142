"""
Core import contracts.
Every component exchanges these models; the ORM tables are only touched
by the SQL repository.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import (
    ApprovalStatus,
    ApprovalType,
    BatchStatus,
    DataType,
    DecisionType,
    EventType,
    FixType,
    RiskLevel,
    SemanticType,
    SessionStatus,
    Severity,
    StrategyKind,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Target Schema ────────────────────────────────────────────

class TargetField(BaseModel):
    """A field of the canonical schema that source columns are mapped onto."""
    name: str
    data_type: DataType = DataType.STRING
    required: bool = False
    description: str = ""
    aliases: list[str] = []
    # Regexes matched against the (expanded) source name by the statistical strategy
    name_hints: list[str] = []
    semantic_types: list[SemanticType] = []
    unique: bool = False
    # Revenue-affecting fields raise approval risk when touched by low-confidence mappings
    critical: bool = False


class TargetSchema(BaseModel):
    entity_type: str = "product"
    fields: list[TargetField]

    @classmethod
    def from_names(cls, names: list[str], entity_type: str = "product") -> "TargetSchema":
        """Build a schema from bare names, borrowing known definitions where available."""
        from app.pipeline.target_schema import PRODUCT_TARGET_SCHEMA

        known = {f.name: f for f in PRODUCT_TARGET_SCHEMA.fields}
        return cls(
            entity_type=entity_type,
            fields=[known.get(n, TargetField(name=n)) for n in names],
        )

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get(self, name: str) -> Optional[TargetField]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


# ── Field Extraction ─────────────────────────────────────────

class FieldStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    average: Optional[float] = None
    avg_length: float = 0.0
    common_values: list[str] = []


class SourceFieldDescriptor(BaseModel):
    """Typed description of one source column. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    name: str
    position: int = 0
    data_type: DataType = DataType.STRING
    semantic_type: Optional[SemanticType] = None
    null_percentage: float = Field(ge=0.0, le=100.0, default=0.0)
    unique_percentage: float = Field(ge=0.0, le=100.0, default=0.0)
    sample_values: list[str] = []
    patterns: list[str] = []
    statistics: FieldStatistics = FieldStatistics()
    # Abbreviation-expanded name; metadata only, never replaces `name`
    expanded_name: Optional[str] = None


class ExtractionResult(BaseModel):
    fields: list[SourceFieldDescriptor]
    sample_rows: list[dict[str, Any]]
    total_records: int
    headerless: bool = False
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    corrupted_rows: int = 0
    encoding: str = "utf-8"
    file_type: str = "csv"


# ── Mapping ──────────────────────────────────────────────────

class FieldMapping(BaseModel):
    source_field: str
    target_field: Optional[str] = None
    confidence: int = Field(ge=0, le=100, default=0)
    strategy: Optional[StrategyKind] = None
    rationale: str = ""
    alternatives: list[dict[str, Any]] = []


class MappingOptions(BaseModel):
    use_external: Optional[bool] = None
    use_historical: bool = True
    min_confidence: Optional[int] = None


class MappingMetadata(BaseModel):
    total_fields: int = 0
    mapped_fields: int = 0
    unmapped_fields: int = 0
    average_confidence: float = 0.0
    strategy_counts: dict[str, int] = {}
    external_calls: int = 0
    external_cost_usd: float = 0.0
    processing_time_ms: int = 0
    required_targets_missing: list[str] = []
    ambiguities: list[dict[str, Any]] = []


class MappingResult(BaseModel):
    mappings: list[FieldMapping]
    metadata: MappingMetadata


class MappingCacheEntry(BaseModel):
    pattern: str
    target_field: str
    confidence: int = Field(ge=0, le=100)
    usage_count: int = 1
    success_rate: float = Field(ge=0.0, le=100.0)
    last_used_at: datetime = Field(default_factory=utcnow)
    strategies: list[str] = []


# ── Validation & Recovery ────────────────────────────────────

class ValidationIssue(BaseModel):
    row_index: int
    field: str
    value: Any = None
    rule: str
    severity: Severity = Severity.ERROR
    message: str = ""


class AutoFix(BaseModel):
    fix_type: FixType
    row_index: int
    field: str
    original_value: Any = None
    new_value: Any = None
    confidence: int = Field(ge=0, le=100)
    auto_applicable: bool = False
    description: str = ""


# ── Approval ─────────────────────────────────────────────────

class RiskAssessment(BaseModel):
    risk_level: RiskLevel
    risk_score: int = Field(ge=0, le=100)
    factors: list[str] = []
    recommendation: DecisionType = DecisionType.APPROVE
    affected_records: int = 0
    requires_security_review: bool = False


class ApprovalRequest(BaseModel):
    request_id: str = Field(default_factory=new_id)
    session_id: str
    request_type: ApprovalType = ApprovalType.IMPORT_APPROVAL
    risk_level: RiskLevel
    risk_score: int
    priority: int = 5
    status: ApprovalStatus = ApprovalStatus.PENDING
    assigned_to: list[str]
    escalation_path: list[str] = []
    escalation_level: int = 0
    deadline: datetime
    system_recommendation: DecisionType = DecisionType.APPROVE
    context: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


class ApprovalDecision(BaseModel):
    """Append-only audit record of one decision."""
    model_config = ConfigDict(frozen=True)

    decision_id: str = Field(default_factory=new_id)
    request_id: str
    approver: str
    decision: DecisionType
    reasoning: Optional[str] = None
    confidence_at_decision: Optional[float] = None
    system_recommendation: DecisionType
    override: bool = False
    context: dict[str, Any] = {}
    decided_at: datetime = Field(default_factory=utcnow)


# ── Batches & History ────────────────────────────────────────

class ImportBatch(BaseModel):
    session_id: str
    batch_number: int
    start_index: int
    end_index: int
    status: BatchStatus = BatchStatus.PENDING
    succeeded: int = 0
    failed: int = 0
    attempts: int = 0
    worker_id: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def record_count(self) -> int:
        return self.end_index - self.start_index


class HistoryEntry(BaseModel):
    session_id: str
    record_index: int
    batch_number: Optional[int] = None
    status: str
    error: Optional[str] = None


# ── Sessions & Events ────────────────────────────────────────

class FileMeta(BaseModel):
    file_name: str
    file_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    owner: Optional[str] = None
    entity_type: str = "product"
    batch_size: Optional[int] = None
    auto_advance_threshold: Optional[float] = None


class ImportConfig(BaseModel):
    skip_errors: bool = False
    batch_size: Optional[int] = None
    approved_fix_types: list[FixType] = []


class SessionProgress(BaseModel):
    total_records: int = 0
    processed_records: int = 0
    succeeded_records: int = 0
    failed_records: int = 0
    percentage: float = 0.0
    records_per_second: float = 0.0
    eta_seconds: Optional[float] = None


class ImportSession(BaseModel):
    session_id: str = Field(default_factory=new_id)
    owner: Optional[str] = None
    file_name: str
    file_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    status: SessionStatus = SessionStatus.INITIATED
    entity_type: str = "product"
    batch_size: int = 100
    auto_advance_threshold: float = 0.70
    skip_errors: bool = False
    headerless: bool = False
    progress: SessionProgress = Field(default_factory=SessionProgress)
    aggregate_confidence: Optional[float] = None
    error_log: list[dict[str, Any]] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ProgressEvent(BaseModel):
    session_id: str
    sequence: int
    type: EventType
    step: str
    percentage: float = 0.0
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = {}
