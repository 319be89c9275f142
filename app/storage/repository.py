"""
Persistence boundary for the import engine.

The core only talks to ImportRepository. InMemoryRepository backs tests and
single-process dev runs; SqlImportRepository writes the same records to
Postgres through the async session factory.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import structlog

from app.models.enums import ApprovalStatus
from app.schemas.imports import (
    ApprovalDecision,
    ApprovalRequest,
    HistoryEntry,
    ImportBatch,
    ImportSession,
    MappingCacheEntry,
)

logger = structlog.get_logger(__name__)


def rolled_success_rate(current_rate: float, usage_count: int, outcome_score: float) -> float:
    """Running mean of outcome scores (0-100) over all uses of a cache entry."""
    total = current_rate * usage_count + outcome_score
    return round(total / (usage_count + 1), 4)


class ImportRepository(ABC):
    """Storage operations the import workflow depends on."""

    # ── Sessions ─────────────────────────────────────────────
    @abstractmethod
    async def save_session(self, session: ImportSession) -> None:
        ...

    # ── Mapping cache ────────────────────────────────────────
    @abstractmethod
    async def get_cache_entries(self, pattern: str) -> list[MappingCacheEntry]:
        """All cached targets for a normalized source pattern."""
        ...

    @abstractmethod
    async def upsert_cache_entry(
        self,
        pattern: str,
        target_field: str,
        confidence: int,
        outcome_score: float,
        strategy: str,
        create: bool = True,
    ) -> Optional[MappingCacheEntry]:
        """
        Increment usage and roll the success rate for (pattern, target).
        Creates the entry when missing and `create` is set; returns None otherwise.
        """
        ...

    # ── Batches & history ────────────────────────────────────
    @abstractmethod
    async def save_batch(self, batch: ImportBatch) -> None:
        ...

    @abstractmethod
    async def add_history(self, entries: list[HistoryEntry]) -> None:
        ...

    # ── Approvals ────────────────────────────────────────────
    @abstractmethod
    async def save_approval_request(self, request: ApprovalRequest) -> None:
        ...

    @abstractmethod
    async def append_decision(self, decision: ApprovalDecision) -> None:
        ...

    # ── Learning counters ────────────────────────────────────
    @abstractmethod
    async def load_fix_effectiveness(self) -> dict[str, dict]:
        ...

    @abstractmethod
    async def save_fix_effectiveness(self, fix_type: str, stats: dict) -> None:
        ...

    # ── Costs ────────────────────────────────────────────────
    @abstractmethod
    async def record_cost_event(self, event: dict) -> None:
        ...


class InMemoryRepository(ImportRepository):
    """Dict-backed repository. Process-local; nothing survives a restart."""

    def __init__(self):
        self.sessions: dict[str, ImportSession] = {}
        self.cache: dict[tuple[str, str], MappingCacheEntry] = {}
        self.batches: dict[tuple[str, int], ImportBatch] = {}
        self.history: list[HistoryEntry] = []
        self.approval_requests: dict[str, ApprovalRequest] = {}
        self.decisions: list[ApprovalDecision] = []
        self.fix_effectiveness: dict[str, dict] = {}
        self.cost_events: list[dict] = []

    async def save_session(self, session: ImportSession) -> None:
        self.sessions[session.session_id] = session.model_copy(deep=True)

    async def get_cache_entries(self, pattern: str) -> list[MappingCacheEntry]:
        return [e.model_copy() for (p, _), e in self.cache.items() if p == pattern]

    async def upsert_cache_entry(
        self,
        pattern: str,
        target_field: str,
        confidence: int,
        outcome_score: float,
        strategy: str,
        create: bool = True,
    ) -> Optional[MappingCacheEntry]:
        key = (pattern, target_field)
        current = self.cache.get(key)
        now = datetime.now(timezone.utc)

        if current is None:
            if not create:
                return None
            entry = MappingCacheEntry(
                pattern=pattern,
                target_field=target_field,
                confidence=confidence,
                usage_count=1,
                success_rate=float(min(confidence, outcome_score)),
                last_used_at=now,
                strategies=[strategy],
            )
        else:
            entry = current.model_copy(update={
                "usage_count": current.usage_count + 1,
                "success_rate": rolled_success_rate(
                    current.success_rate, current.usage_count, outcome_score
                ),
                "confidence": max(current.confidence, confidence),
                "last_used_at": now,
                "strategies": (current.strategies + [strategy])[-10:],
            })

        self.cache[key] = entry
        return entry.model_copy()

    async def save_batch(self, batch: ImportBatch) -> None:
        self.batches[(batch.session_id, batch.batch_number)] = batch.model_copy()

    async def add_history(self, entries: list[HistoryEntry]) -> None:
        self.history.extend(entries)

    async def save_approval_request(self, request: ApprovalRequest) -> None:
        self.approval_requests[request.request_id] = request.model_copy(deep=True)

    async def append_decision(self, decision: ApprovalDecision) -> None:
        self.decisions.append(decision)

    async def load_fix_effectiveness(self) -> dict[str, dict]:
        return {k: dict(v) for k, v in self.fix_effectiveness.items()}

    async def save_fix_effectiveness(self, fix_type: str, stats: dict) -> None:
        self.fix_effectiveness[fix_type] = dict(stats)

    async def record_cost_event(self, event: dict) -> None:
        self.cost_events.append(dict(event))

    # ── Inspection helpers ───────────────────────────────────
    def batches_for(self, session_id: str) -> list[ImportBatch]:
        return sorted(
            (b for (sid, _), b in self.batches.items() if sid == session_id),
            key=lambda b: b.batch_number,
        )

    def pending_requests(self) -> list[ApprovalRequest]:
        return [r for r in self.approval_requests.values() if r.status == ApprovalStatus.PENDING]
