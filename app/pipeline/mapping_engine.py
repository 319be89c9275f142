"""
Mapping engine: runs every strategy, then merges candidates into one
ranked mapping per source field.

Merge policy:
- highest confidence wins; exact ties break by strategy priority
  (exact, historical, statistical, fuzzy, external)
- a target is claimed at most once; the displaced field falls back to its
  next-best unclaimed candidate
- fields nobody can place stay in the output with target_field=None
"""

import time
from collections import deque
from typing import Callable, Optional

import structlog

from app.config import settings
from app.engines.base import FieldClassifier
from app.errors import MappingAmbiguityWarning, SessionCancelledError
from app.models.enums import StrategyKind
from app.observability.cost_tracker import CostTracker
from app.observability.metrics import (
    field_mappings_total,
    mapping_confidence,
    mapping_resolve_duration_seconds,
)
from app.pipeline.mapping_cache import MappingCache
from app.pipeline.strategies import (
    ExactStrategy,
    ExternalStrategy,
    FuzzyStrategy,
    HistoricalStrategy,
    MappingCandidate,
    MappingStrategy,
    ResolutionContext,
    StatisticalStrategy,
    check_exhaustive,
)
from app.schemas.imports import (
    FieldMapping,
    MappingMetadata,
    MappingOptions,
    MappingResult,
    SourceFieldDescriptor,
    TargetSchema,
)

logger = structlog.get_logger(__name__)

STRATEGY_PRIORITY = {kind: i for i, kind in enumerate(StrategyKind)}
AMBIGUITY_MARGIN = 5


def _rank_key(candidate: MappingCandidate, position: int) -> tuple:
    return (candidate.confidence, -STRATEGY_PRIORITY[candidate.strategy], -position)


class MappingEngine:

    def __init__(
        self,
        cache: MappingCache,
        classifier: Optional[FieldClassifier] = None,
        min_confidence: Optional[int] = None,
        fuzzy_min_similarity: Optional[float] = None,
        external_enabled: Optional[bool] = None,
    ):
        check_exhaustive()
        self.cache = cache
        self.classifier = classifier
        self.min_confidence = min_confidence if min_confidence is not None else settings.MIN_CONFIDENCE
        self.external_enabled = (
            external_enabled if external_enabled is not None else settings.CLASSIFIER_ENABLED
        )

        self.strategies: list[MappingStrategy] = [
            ExactStrategy(),
            HistoricalStrategy(cache),
            StatisticalStrategy(),
            FuzzyStrategy(fuzzy_min_similarity),
        ]
        if classifier is not None:
            # Always last: it only looks at fields the others left weak
            self.strategies.append(ExternalStrategy(classifier))

    async def resolve(
        self,
        source_fields: list[SourceFieldDescriptor],
        target_schema: TargetSchema,
        options: Optional[MappingOptions] = None,
        session_id: Optional[str] = None,
        cost_tracker: Optional[CostTracker] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> MappingResult:
        options = options or MappingOptions()
        started = time.monotonic()
        context = ResolutionContext(
            session_id=session_id,
            cost_tracker=cost_tracker,
            min_confidence=options.min_confidence or self.min_confidence,
            is_cancelled=is_cancelled or (lambda: False),
        )
        use_external = self.external_enabled if options.use_external is None else options.use_external

        candidates: dict[str, list[MappingCandidate]] = {f.name: [] for f in source_fields}
        for strategy in self.strategies:
            if context.is_cancelled():
                raise SessionCancelledError(session_id or "")
            if strategy.kind == StrategyKind.HISTORICAL and not options.use_historical:
                continue
            if strategy.kind == StrategyKind.EXTERNAL and not use_external:
                continue

            proposals = await strategy.propose(source_fields, target_schema, context)
            for cand in proposals:
                candidates[cand.source_field].append(cand)
                context.note(cand)
            logger.debug("strategy_completed", strategy=strategy.kind.value, candidates=len(proposals))

        mappings, ambiguities = self.merge(source_fields, candidates)

        mapped = [m for m in mappings if m.target_field is not None]
        strategy_counts: dict[str, int] = {}
        for m in mapped:
            strategy_counts[m.strategy.value] = strategy_counts.get(m.strategy.value, 0) + 1
            field_mappings_total.labels(strategy=m.strategy.value).inc()
            mapping_confidence.observe(m.confidence)

        claimed = {m.target_field for m in mapped}
        elapsed = time.monotonic() - started
        mapping_resolve_duration_seconds.observe(elapsed)

        metadata = MappingMetadata(
            total_fields=len(mappings),
            mapped_fields=len(mapped),
            unmapped_fields=len(mappings) - len(mapped),
            average_confidence=(
                round(sum(m.confidence for m in mapped) / len(mapped), 2) if mapped else 0.0
            ),
            strategy_counts=strategy_counts,
            external_calls=context.external_calls,
            external_cost_usd=round(context.external_cost_usd, 6),
            processing_time_ms=int(elapsed * 1000),
            required_targets_missing=[
                t.name for t in target_schema.fields if t.required and t.name not in claimed
            ],
            ambiguities=[
                {
                    "source_field": w.source_field,
                    "candidates": w.candidates,
                    "margin": w.margin,
                    "message": str(w),
                }
                for w in ambiguities
            ],
        )

        logger.info(
            "mapping_resolved",
            session_id=session_id,
            total=metadata.total_fields,
            mapped=metadata.mapped_fields,
            average_confidence=metadata.average_confidence,
            strategies=strategy_counts,
            external_calls=context.external_calls,
        )
        return MappingResult(mappings=mappings, metadata=metadata)

    @staticmethod
    def merge(
        source_fields: list[SourceFieldDescriptor],
        candidates: dict[str, list[MappingCandidate]],
    ) -> tuple[list[FieldMapping], list[MappingAmbiguityWarning]]:
        position = {f.name: f.position for f in source_fields}

        # Best candidate per (source, target), ranked
        ranked: dict[str, list[MappingCandidate]] = {}
        for name, cands in candidates.items():
            best_per_target: dict[str, MappingCandidate] = {}
            for c in cands:
                held = best_per_target.get(c.target_field)
                if held is None or _rank_key(c, 0) > _rank_key(held, 0):
                    best_per_target[c.target_field] = c
            ranked[name] = sorted(
                best_per_target.values(),
                key=lambda c: (c.confidence, -STRATEGY_PRIORITY[c.strategy]),
                reverse=True,
            )

        ambiguities = []
        for fld in source_fields:
            top = ranked[fld.name]
            if len(top) >= 2 and top[0].confidence - top[1].confidence <= AMBIGUITY_MARGIN:
                warning = MappingAmbiguityWarning(
                    fld.name,
                    [top[0].target_field, top[1].target_field],
                    top[0].confidence - top[1].confidence,
                )
                ambiguities.append(warning)
                logger.warning("mapping_ambiguous", source_field=fld.name, candidates=warning.candidates)

        # Claim resolution: a displaced field retries with its next candidate
        pointer = {f.name: 0 for f in source_fields}
        claims: dict[str, tuple[str, MappingCandidate]] = {}
        displaced_by: dict[str, str] = {}
        queue = deque(f.name for f in sorted(source_fields, key=lambda f: f.position))

        while queue:
            name = queue.popleft()
            options = ranked[name]
            while pointer[name] < len(options):
                cand = options[pointer[name]]
                holder = claims.get(cand.target_field)
                if holder is None:
                    claims[cand.target_field] = (name, cand)
                    break
                holder_name, holder_cand = holder
                if _rank_key(cand, position[name]) > _rank_key(holder_cand, position[holder_name]):
                    claims[cand.target_field] = (name, cand)
                    pointer[holder_name] += 1
                    displaced_by[holder_name] = name
                    queue.append(holder_name)
                    break
                displaced_by[name] = holder_name
                pointer[name] += 1

        assigned = {name: cand for name, cand in claims.values()}
        mappings = []
        for fld in source_fields:
            cand = assigned.get(fld.name)
            alternatives = [
                {"target_field": c.target_field, "confidence": c.confidence, "strategy": c.strategy.value}
                for c in ranked[fld.name]
                if cand is None or c.target_field != cand.target_field
            ][:3]
            if cand is None:
                if ranked[fld.name]:
                    rationale = f"All candidate targets claimed by higher-confidence fields (last: '{displaced_by.get(fld.name)}')"
                else:
                    rationale = "No strategy produced a candidate"
                mappings.append(FieldMapping(
                    source_field=fld.name,
                    rationale=rationale,
                    alternatives=alternatives,
                ))
                continue
            mappings.append(FieldMapping(
                source_field=fld.name,
                target_field=cand.target_field,
                confidence=cand.confidence,
                strategy=cand.strategy,
                rationale=cand.rationale,
                alternatives=alternatives,
            ))
        return mappings, ambiguities
