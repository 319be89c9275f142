"""
Postgres-backed ImportRepository.
Each call opens its own short transaction so concurrent sessions never share
an AsyncSession.
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.database import async_session_factory
from app.models.tables import (
    ApprovalDecisionRecord,
    ApprovalRequestRecord,
    CostEvent,
    FieldMappingCacheRecord,
    FixEffectivenessRecord,
    ImportBatchRecord,
    ImportHistoryRecord,
    ImportSessionRecord,
)
from app.schemas.imports import (
    ApprovalDecision,
    ApprovalRequest,
    HistoryEntry,
    ImportBatch,
    ImportSession,
    MappingCacheEntry,
)
from app.storage.repository import ImportRepository

logger = structlog.get_logger(__name__)


class SqlImportRepository(ImportRepository):

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session_factory

    async def save_session(self, session: ImportSession) -> None:
        values = {
            "session_id": uuid.UUID(session.session_id),
            "owner": session.owner,
            "file_name": session.file_name,
            "file_type": session.file_type,
            "file_size_bytes": session.file_size_bytes,
            "status": session.status.value,
            "entity_type": session.entity_type,
            "batch_size": session.batch_size,
            "auto_advance_threshold": session.auto_advance_threshold,
            "skip_errors": session.skip_errors,
            "headerless": session.headerless,
            "total_records": session.progress.total_records,
            "processed_records": session.progress.processed_records,
            "succeeded_records": session.progress.succeeded_records,
            "failed_records": session.progress.failed_records,
            "aggregate_confidence": (
                Decimal(str(session.aggregate_confidence))
                if session.aggregate_confidence is not None else None
            ),
            "error_log_json": {"errors": session.error_log},
            "created_at": session.created_at,
            "updated_at": session.updated_at,
            "completed_at": session.completed_at,
        }
        stmt = pg_insert(ImportSessionRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ImportSessionRecord.session_id],
            set_={k: v for k, v in values.items() if k not in ("session_id", "created_at")},
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def get_cache_entries(self, pattern: str) -> list[MappingCacheEntry]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(FieldMappingCacheRecord)
                .where(FieldMappingCacheRecord.source_pattern == pattern)
                .order_by(FieldMappingCacheRecord.usage_count.desc())
            )
            return [
                MappingCacheEntry(
                    pattern=row.source_pattern,
                    target_field=row.target_field,
                    confidence=row.confidence,
                    usage_count=row.usage_count,
                    success_rate=row.success_rate,
                    last_used_at=row.last_used_at,
                    strategies=(row.strategies_json or {}).get("strategies", []),
                )
                for row in result.scalars().all()
            ]

    async def upsert_cache_entry(
        self,
        pattern: str,
        target_field: str,
        confidence: int,
        outcome_score: float,
        strategy: str,
        create: bool = True,
    ) -> Optional[MappingCacheEntry]:
        table = FieldMappingCacheRecord
        async with self.session_factory() as db:
            if create:
                stmt = pg_insert(table).values(
                    source_pattern=pattern,
                    target_field=target_field,
                    confidence=confidence,
                    usage_count=1,
                    success_rate=float(min(confidence, outcome_score)),
                    strategies_json={"strategies": [strategy]},
                )
                # Counter maths happens in SQL so racing sessions never lose an increment
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_mapping_cache_pattern_target",
                    set_={
                        "usage_count": table.usage_count + 1,
                        "success_rate": (table.success_rate * table.usage_count + outcome_score)
                        / (table.usage_count + 1),
                        "confidence": func.greatest(table.confidence, confidence),
                        "last_used_at": func.now(),
                    },
                ).returning(table)
                result = await db.execute(stmt)
            else:
                result = await db.execute(
                    update(table)
                    .where(table.source_pattern == pattern, table.target_field == target_field)
                    .values(
                        usage_count=table.usage_count + 1,
                        success_rate=(table.success_rate * table.usage_count + outcome_score)
                        / (table.usage_count + 1),
                        last_used_at=func.now(),
                    )
                    .returning(table)
                )
            row = result.scalars().first()
            await db.commit()

        if row is None:
            return None
        return MappingCacheEntry(
            pattern=row.source_pattern,
            target_field=row.target_field,
            confidence=row.confidence,
            usage_count=row.usage_count,
            success_rate=row.success_rate,
            last_used_at=row.last_used_at,
        )

    async def save_batch(self, batch: ImportBatch) -> None:
        values = {
            "session_id": uuid.UUID(batch.session_id),
            "batch_number": batch.batch_number,
            "start_index": batch.start_index,
            "end_index": batch.end_index,
            "record_count": batch.record_count,
            "status": batch.status.value,
            "succeeded": batch.succeeded,
            "failed": batch.failed,
            "attempts": batch.attempts,
            "worker_id": batch.worker_id,
            "error": batch.error,
            "started_at": batch.started_at,
            "completed_at": batch.completed_at,
        }
        stmt = pg_insert(ImportBatchRecord).values(**values).on_conflict_do_update(
            constraint="uq_batch_session_number",
            set_={k: v for k, v in values.items() if k not in ("session_id", "batch_number")},
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def add_history(self, entries: list[HistoryEntry]) -> None:
        if not entries:
            return
        async with self.session_factory() as db:
            db.add_all([
                ImportHistoryRecord(
                    session_id=uuid.UUID(e.session_id),
                    record_index=e.record_index,
                    batch_number=e.batch_number,
                    status=e.status,
                    error=e.error,
                )
                for e in entries
            ])
            await db.commit()

    async def save_approval_request(self, request: ApprovalRequest) -> None:
        values = {
            "request_id": uuid.UUID(request.request_id),
            "session_id": uuid.UUID(request.session_id),
            "request_type": request.request_type.value,
            "risk_level": request.risk_level.value,
            "risk_score": request.risk_score,
            "priority": request.priority,
            "status": request.status.value,
            "assigned_to_json": {"approvers": request.assigned_to},
            "escalation_path_json": {"path": request.escalation_path},
            "escalation_level": request.escalation_level,
            "system_recommendation": request.system_recommendation.value,
            "context_json": request.context,
            "deadline": request.deadline,
            "resolved_at": request.resolved_at,
        }
        stmt = pg_insert(ApprovalRequestRecord).values(**values).on_conflict_do_update(
            index_elements=[ApprovalRequestRecord.request_id],
            set_={k: v for k, v in values.items() if k != "request_id"},
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def append_decision(self, decision: ApprovalDecision) -> None:
        async with self.session_factory() as db:
            db.add(ApprovalDecisionRecord(
                decision_id=uuid.UUID(decision.decision_id),
                request_id=uuid.UUID(decision.request_id),
                approver=decision.approver,
                decision=decision.decision.value,
                reasoning=decision.reasoning,
                confidence_at_decision=(
                    Decimal(str(decision.confidence_at_decision))
                    if decision.confidence_at_decision is not None else None
                ),
                system_recommendation=decision.system_recommendation.value,
                is_override=decision.override,
                context_json=decision.context,
                decided_at=decision.decided_at,
            ))
            await db.commit()

    async def load_fix_effectiveness(self) -> dict[str, dict]:
        async with self.session_factory() as db:
            result = await db.execute(select(FixEffectivenessRecord))
            return {
                row.fix_type: {
                    "attempts": row.attempts,
                    "successes": row.successes,
                    "effectiveness": row.effectiveness,
                }
                for row in result.scalars().all()
            }

    async def save_fix_effectiveness(self, fix_type: str, stats: dict) -> None:
        stmt = pg_insert(FixEffectivenessRecord).values(fix_type=fix_type, **stats)
        stmt = stmt.on_conflict_do_update(
            index_elements=[FixEffectivenessRecord.fix_type],
            set_={**stats, "updated_at": func.now()},
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def record_cost_event(self, event: dict) -> None:
        async with self.session_factory() as db:
            db.add(CostEvent(
                session_id=uuid.UUID(event["session_id"]) if event.get("session_id") else None,
                provider=event["provider"],
                operation=event["operation"],
                field_count=event.get("field_count"),
                cost_usd=Decimal(str(event.get("cost_usd", 0.0))),
                latency_ms=event.get("latency_ms"),
                outcome=event.get("outcome", "ok"),
            ))
            await db.commit()
