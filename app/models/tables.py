"""
SQLAlchemy ORM models for import sessions, mapping cache, batches,
history, approvals and cost events.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    Text,
    ForeignKey,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID, ENUM
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.database import Base


# ────────────────────────────────────────────────────────────
# IMPORT SESSIONS
# ────────────────────────────────────────────────────────────
class ImportSessionRecord(Base):
    __tablename__ = "import_sessions"

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    owner: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(
        ENUM('initiated', 'analyzing', 'mapping', 'mapping_complete', 'generating_preview',
             'preview_ready', 'awaiting_approval', 'processing', 'completed', 'failed',
             'cancelled', 'timeout', name='import_status_enum', create_type=False),
        nullable=False, default="initiated", server_default="initiated"
    )
    entity_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="product", server_default="product"
    )
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    auto_advance_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.70)
    skip_errors: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    headerless: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aggregate_confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)
    error_log_json: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    batches = relationship("ImportBatchRecord", back_populates="session", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_import_sessions_status", "status"),
        Index("idx_import_sessions_owner", "owner"),
        Index("idx_import_sessions_created", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# FIELD MAPPING CACHE
# ────────────────────────────────────────────────────────────
class FieldMappingCacheRecord(Base):
    __tablename__ = "field_mapping_cache"

    cache_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    source_pattern: Mapped[str] = mapped_column(Text, nullable=False)
    target_field: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False)
    strategies_json: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        UniqueConstraint("source_pattern", "target_field", name="uq_mapping_cache_pattern_target"),
        Index("idx_mapping_cache_pattern", "source_pattern"),
    )


# ────────────────────────────────────────────────────────────
# IMPORT BATCHES
# ────────────────────────────────────────────────────────────
class ImportBatchRecord(Base):
    __tablename__ = "import_batches"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("import_sessions.session_id", ondelete="CASCADE"),
        nullable=False
    )
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    start_index: Mapped[int] = mapped_column(Integer, nullable=False)
    end_index: Mapped[int] = mapped_column(Integer, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        ENUM('pending', 'processing', 'completed', 'failed', name='batch_status_enum', create_type=False),
        nullable=False, default="pending", server_default="pending"
    )
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    worker_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    session = relationship("ImportSessionRecord", back_populates="batches")

    __table_args__ = (
        UniqueConstraint("session_id", "batch_number", name="uq_batch_session_number"),
        Index("idx_batches_session", "session_id"),
    )


# ────────────────────────────────────────────────────────────
# IMPORT HISTORY
# ────────────────────────────────────────────────────────────
class ImportHistoryRecord(Base):
    __tablename__ = "import_history"

    history_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("import_sessions.session_id", ondelete="CASCADE"),
        nullable=False
    )
    record_index: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        ENUM('succeeded', 'failed', 'skipped', name='record_outcome_enum', create_type=False),
        nullable=False
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_history_session", "session_id"),
        Index("idx_history_status", "session_id", "status"),
    )


# ────────────────────────────────────────────────────────────
# APPROVAL REQUESTS
# ────────────────────────────────────────────────────────────
class ApprovalRequestRecord(Base):
    __tablename__ = "approval_requests"

    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("import_sessions.session_id", ondelete="CASCADE"),
        nullable=False
    )
    request_type: Mapped[str] = mapped_column(Text, nullable=False)
    risk_level: Mapped[str] = mapped_column(
        ENUM('low', 'medium', 'high', 'critical', name='risk_level_enum', create_type=False),
        nullable=False
    )
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(
        ENUM('pending', 'approved', 'rejected', 'escalated', 'timeout',
             name='approval_status_enum', create_type=False),
        nullable=False, default="pending", server_default="pending"
    )
    assigned_to_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
    escalation_path_json: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    system_recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_json: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    decisions = relationship("ApprovalDecisionRecord", back_populates="request", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_approvals_session", "session_id"),
        Index("idx_approvals_status", "status", "priority"),
        Index("idx_approvals_deadline", "deadline"),
    )


# ────────────────────────────────────────────────────────────
# APPROVAL DECISIONS (append-only)
# ────────────────────────────────────────────────────────────
class ApprovalDecisionRecord(Base):
    __tablename__ = "approval_decisions"

    decision_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_requests.request_id", ondelete="CASCADE"),
        nullable=False
    )
    approver: Mapped[str] = mapped_column(Text, nullable=False)
    decision: Mapped[str] = mapped_column(
        ENUM('approve', 'reject', 'escalate', 'delegate', name='decision_type_enum', create_type=False),
        nullable=False
    )
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence_at_decision: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)
    system_recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    context_json: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    request = relationship("ApprovalRequestRecord", back_populates="decisions")

    __table_args__ = (
        Index("idx_decisions_request", "request_id"),
    )


# ────────────────────────────────────────────────────────────
# FIX EFFECTIVENESS
# ────────────────────────────────────────────────────────────
class FixEffectivenessRecord(Base):
    __tablename__ = "fix_effectiveness"

    fix_type: Mapped[str] = mapped_column(Text, primary_key=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    effectiveness: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )


# ────────────────────────────────────────────────────────────
# COST EVENTS
# ────────────────────────────────────────────────────────────
class CostEvent(Base):
    __tablename__ = "cost_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("import_sessions.session_id", ondelete="SET NULL"),
        nullable=True
    )
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    operation: Mapped[str] = mapped_column(Text, nullable=False)
    field_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6), nullable=True)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    outcome: Mapped[str] = mapped_column(Text, nullable=False, default="ok")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_cost_session", "session_id"),
        Index("idx_cost_provider", "provider"),
        Index("idx_cost_created", "created_at"),
    )
