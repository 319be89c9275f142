"""
Mapping cache: learned source→target mappings keyed by normalized name.

Entries are never deleted. Relevance decays through recency weighting at
lookup time, and success rate rolls with every confirmed or rejected session.
Writes are optimistic counter updates delegated to the repository.
"""

import re
from datetime import datetime, timezone
from typing import Optional

import structlog

from app.config import settings
from app.schemas.imports import FieldMapping, MappingCacheEntry
from app.storage.repository import ImportRepository

logger = structlog.get_logger(__name__)

HISTORICAL_CONFIDENCE_CAP = 95
MIN_RECENCY_WEIGHT = 0.5


def normalize_pattern(name: str) -> str:
    """Canonical cache key: lowercase alphanumerics only."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


class MappingCache:

    def __init__(
        self,
        repository: ImportRepository,
        min_confidence: Optional[int] = None,
        half_life_days: Optional[float] = None,
    ):
        self.repository = repository
        self.min_confidence = (
            min_confidence if min_confidence is not None else settings.CACHE_MIN_CONFIDENCE
        )
        self.half_life_days = half_life_days or settings.CACHE_RECENCY_HALF_LIFE_DAYS

    def recency_weight(self, last_used_at: datetime, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        if last_used_at.tzinfo is None:
            last_used_at = last_used_at.replace(tzinfo=timezone.utc)
        age_days = max(0.0, (now - last_used_at).total_seconds() / 86400)
        return max(MIN_RECENCY_WEIGHT, 0.5 ** (age_days / self.half_life_days))

    def score(self, entry: MappingCacheEntry, now: Optional[datetime] = None) -> int:
        """Historical confidence: stored confidence scaled by success rate and recency."""
        raw = entry.confidence * (entry.success_rate / 100.0) * self.recency_weight(entry.last_used_at, now)
        return min(HISTORICAL_CONFIDENCE_CAP, int(round(raw)))

    async def lookup(self, source_name: str) -> list[MappingCacheEntry]:
        return await self.repository.get_cache_entries(normalize_pattern(source_name))

    async def best_match(
        self,
        source_name: str,
        allowed_targets: Optional[set[str]] = None,
    ) -> Optional[tuple[MappingCacheEntry, int]]:
        """
        Highest (confidence x success_rate) entry for the source pattern,
        with its recency-weighted historical confidence.
        """
        entries = await self.lookup(source_name)
        if allowed_targets is not None:
            entries = [e for e in entries if e.target_field in allowed_targets]
        if not entries:
            return None

        best = max(
            entries,
            key=lambda e: (e.confidence * e.success_rate, e.usage_count, e.last_used_at),
        )
        return best, self.score(best)

    async def record_outcome(self, mappings: list[FieldMapping], success: bool) -> int:
        """
        Write back a session's mappings once its outcome is known.

        Confirmed sessions create or reinforce entries for mappings at or above
        the minimum confidence. Rejected sessions only lower the success rate of
        entries that already exist. Returns the number of entries touched.
        """
        outcome_score = 100.0 if success else 0.0
        touched = 0
        for mapping in mappings:
            if mapping.target_field is None or mapping.confidence < self.min_confidence:
                continue
            entry = await self.repository.upsert_cache_entry(
                pattern=normalize_pattern(mapping.source_field),
                target_field=mapping.target_field,
                confidence=mapping.confidence,
                outcome_score=outcome_score,
                strategy=mapping.strategy.value if mapping.strategy else "unknown",
                create=success,
            )
            if entry is not None:
                touched += 1

        logger.info("mapping_cache_updated", entries=touched, success=success)
        return touched
