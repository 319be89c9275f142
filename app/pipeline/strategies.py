"""
Field mapping strategies.

A closed set: one MappingStrategy subclass per StrategyKind. Each strategy
proposes candidates independently; MappingEngine merges them.

Confidence bands:
    exact        100
    fuzzy        61-99   (monotonic in normalized edit-distance similarity)
    statistical  40-85
    historical   <= 95   (stored confidence x success rate x recency)
    external     40-89
"""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from app.config import settings
from app.engines.base import ClassifierError, ExternalClassifierTimeout, FieldClassifier
from app.errors import CostLimitExceeded
from app.models.enums import DataType, SemanticType, StrategyKind
from app.observability.cost_tracker import CostTracker
from app.observability.metrics import external_classifier_calls_total
from app.pipeline.field_extractor import split_name
from app.pipeline.mapping_cache import MappingCache, normalize_pattern
from app.schemas.imports import SourceFieldDescriptor, TargetField, TargetSchema

logger = structlog.get_logger(__name__)

EXACT_CONFIDENCE = 100
FUZZY_FLOOR = 61
FUZZY_CEILING = 99
STATISTICAL_BASE = 40
STATISTICAL_SPAN = 45
STATISTICAL_MIN_SCORE = 0.5
EXTERNAL_MIN = 40
EXTERNAL_MAX = 89

# Source-name variants are discounted so a rewritten name never outranks a literal match
EXPANDED_NAME_FACTOR = 0.95
STRIPPED_NAME_FACTOR = 0.85
ALIAS_FACTOR = 0.88
GENERIC_PREFIXES = {"product", "item", "prod", "article"}

STATISTICAL_WEIGHTS = {
    "type": 0.30,
    "semantic": 0.30,
    "name_hint": 0.25,
    "uniqueness": 0.10,
    "nulls": 0.05,
}


@dataclass
class MappingCandidate:
    source_field: str
    target_field: str
    confidence: int
    strategy: StrategyKind
    rationale: str = ""


@dataclass
class ResolutionContext:
    """Mutable per-resolve state shared across strategies."""
    session_id: Optional[str] = None
    cost_tracker: Optional[CostTracker] = None
    min_confidence: int = 60
    best_so_far: dict[str, int] = field(default_factory=dict)
    is_cancelled: Callable[[], bool] = lambda: False
    external_calls: int = 0
    external_cost_usd: float = 0.0

    def note(self, candidate: MappingCandidate) -> None:
        current = self.best_so_far.get(candidate.source_field, 0)
        self.best_so_far[candidate.source_field] = max(current, candidate.confidence)


# ─── String Similarity ────────────────────────────────────────

def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> float:
    """1 - normalized edit distance over normalized names."""
    na, nb = normalize_pattern(a), normalize_pattern(b)
    if not na or not nb:
        return 0.0
    return 1.0 - levenshtein(na, nb) / max(len(na), len(nb))


def fuzzy_confidence(similarity: float, min_similarity: float) -> int:
    """Map similarity in [min_similarity, 1] onto [61, 99]."""
    if similarity >= 1.0:
        return FUZZY_CEILING
    span = max(1e-9, 1.0 - min_similarity)
    scaled = (max(similarity, min_similarity) - min_similarity) / span
    return min(FUZZY_CEILING, FUZZY_FLOOR + int(round(scaled * (FUZZY_CEILING - FUZZY_FLOOR))))


def _source_variants(fld: SourceFieldDescriptor) -> list[tuple[str, float, str]]:
    variants = [(fld.name, 1.0, "name")]
    if fld.expanded_name:
        variants.append((fld.expanded_name, EXPANDED_NAME_FACTOR, "expanded name"))
    tokens = (fld.expanded_name or " ".join(split_name(fld.name))).split()
    stripped = [t for t in tokens if t not in GENERIC_PREFIXES]
    if stripped and len(stripped) < len(tokens):
        variants.append((" ".join(stripped), STRIPPED_NAME_FACTOR, "name without entity prefix"))
    return variants


# ─── Strategy Base ────────────────────────────────────────────

class MappingStrategy(ABC):

    @property
    @abstractmethod
    def kind(self) -> StrategyKind:
        ...

    @abstractmethod
    async def propose(
        self,
        fields: list[SourceFieldDescriptor],
        schema: TargetSchema,
        context: ResolutionContext,
    ) -> list[MappingCandidate]:
        ...


class ExactStrategy(MappingStrategy):
    """Case-sensitive equality, or equality after normalization."""

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.EXACT

    async def propose(self, fields, schema, context):
        by_normalized = {normalize_pattern(t.name): t.name for t in schema.fields}
        out = []
        for fld in fields:
            if schema.get(fld.name) is not None:
                out.append(MappingCandidate(fld.name, fld.name, EXACT_CONFIDENCE, self.kind, "Exact name match"))
                continue
            target = by_normalized.get(normalize_pattern(fld.name))
            if target:
                out.append(MappingCandidate(
                    fld.name, target, EXACT_CONFIDENCE, self.kind,
                    f"Normalized name matches '{target}'",
                ))
        return out


class FuzzyStrategy(MappingStrategy):

    def __init__(self, min_similarity: Optional[float] = None):
        self.min_similarity = (
            min_similarity if min_similarity is not None else settings.FUZZY_MIN_SIMILARITY
        )

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.FUZZY

    def best_similarity(self, fld: SourceFieldDescriptor, target: TargetField) -> tuple[float, str]:
        best, how = 0.0, ""
        target_names = [(target.name, 1.0, "target name")] + [
            (alias, ALIAS_FACTOR, f"alias '{alias}'") for alias in target.aliases
        ]
        for source_text, source_factor, source_label in _source_variants(fld):
            for target_text, target_factor, target_label in target_names:
                sim = name_similarity(source_text, target_text) * source_factor * target_factor
                if sim > best:
                    best, how = sim, f"{source_label} vs {target_label}"
        return best, how

    async def propose(self, fields, schema, context):
        out = []
        for fld in fields:
            for target in schema.fields:
                similarity, how = self.best_similarity(fld, target)
                if similarity < self.min_similarity:
                    continue
                out.append(MappingCandidate(
                    fld.name, target.name,
                    fuzzy_confidence(similarity, self.min_similarity),
                    self.kind,
                    f"Similarity {similarity:.2f} ({how})",
                ))
        return out


# ─── Statistical ──────────────────────────────────────────────

def _type_compatibility(source: DataType, target: DataType) -> float:
    if source == target:
        return 1.0
    if target == DataType.NUMBER and source == DataType.INTEGER:
        return 1.0
    if target == DataType.INTEGER and source == DataType.NUMBER:
        return 0.6
    if target == DataType.STRING:
        return 0.4 if source in (DataType.INTEGER, DataType.NUMBER) else 0.2
    if target == DataType.BOOLEAN and source == DataType.INTEGER:
        return 0.3
    return 0.0


def statistical_score(fld: SourceFieldDescriptor, target: TargetField) -> tuple[float, bool, list[str]]:
    """
    Weighted profile fit of a source column against a target field.
    Returns (score 0-1, has_evidence, reasons). Evidence means a name hint or
    a semantic type match; type and distribution alone never justify a mapping.
    """
    reasons = []
    w = STATISTICAL_WEIGHTS
    score = w["type"] * _type_compatibility(fld.data_type, target.data_type)

    semantic_match = False
    if target.semantic_types:
        if fld.semantic_type in target.semantic_types:
            score += w["semantic"]
            semantic_match = True
            reasons.append(f"semantic type {fld.semantic_type.value}")
    elif fld.semantic_type is None or (fld.semantic_type == SemanticType.DATE and target.data_type == DataType.DATE):
        score += w["semantic"] * 0.5

    haystacks = [" ".join(split_name(fld.name))]
    if fld.expanded_name:
        haystacks.append(fld.expanded_name)
    hint_match = any(
        re.search(hint, text) for hint in target.name_hints for text in haystacks
    )
    if hint_match:
        score += w["name_hint"]
        reasons.append("name hint")

    if target.unique:
        score += w["uniqueness"] * min(1.0, fld.unique_percentage / 95.0)
        if fld.unique_percentage >= 95:
            reasons.append(f"{fld.unique_percentage:.0f}% unique")
    else:
        score += w["uniqueness"] * 0.5

    if target.required:
        score += w["nulls"] * max(0.0, 1.0 - fld.null_percentage / 50.0)
    else:
        score += w["nulls"]

    return min(1.0, score), (semantic_match or hint_match), reasons


class StatisticalStrategy(MappingStrategy):

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.STATISTICAL

    async def propose(self, fields, schema, context):
        out = []
        for fld in fields:
            for target in schema.fields:
                score, evidence, reasons = statistical_score(fld, target)
                if not evidence or score < STATISTICAL_MIN_SCORE:
                    continue
                out.append(MappingCandidate(
                    fld.name, target.name,
                    STATISTICAL_BASE + int(round(score * STATISTICAL_SPAN)),
                    self.kind,
                    f"Profile fit {score:.2f}: " + ", ".join(reasons),
                ))
        return out


# ─── Historical ───────────────────────────────────────────────

class HistoricalStrategy(MappingStrategy):

    def __init__(self, cache: MappingCache):
        self.cache = cache

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.HISTORICAL

    async def propose(self, fields, schema, context):
        allowed = set(schema.names)
        out = []
        for fld in fields:
            match = await self.cache.best_match(fld.name, allowed_targets=allowed)
            if match is None:
                continue
            entry, confidence = match
            if confidence <= 0:
                continue
            out.append(MappingCandidate(
                fld.name, entry.target_field, confidence, self.kind,
                f"Used {entry.usage_count} time(s), success rate {entry.success_rate:.0f}%",
            ))
        return out


# ─── External Classifier ──────────────────────────────────────

class ExternalStrategy(MappingStrategy):
    """
    Paid classifier for fields the other strategies left weak.
    Budget-gated per session, timeout-bounded, never raises.
    """

    def __init__(self, classifier: FieldClassifier, timeout_seconds: Optional[float] = None):
        self.classifier = classifier
        self.timeout_seconds = timeout_seconds or settings.CLASSIFIER_TIMEOUT_SECONDS

    @property
    def kind(self) -> StrategyKind:
        return StrategyKind.EXTERNAL

    async def propose(self, fields, schema, context):
        weak = [f for f in fields if context.best_so_far.get(f.name, 0) < context.min_confidence]
        out = []
        provider = self.classifier.provider_name
        cost = self.classifier.cost_per_call_usd

        for fld in weak:
            if context.is_cancelled():
                break
            if context.cost_tracker is not None:
                try:
                    context.cost_tracker.ensure_budget(cost)
                except CostLimitExceeded as e:
                    external_classifier_calls_total.labels(outcome="budget_refused").inc()
                    logger.info("external_classifier_budget_exhausted", field=fld.name, error=e.message)
                    break

            started = time.monotonic()
            outcome = "ok"
            suggestion = None
            try:
                suggestion = await asyncio.wait_for(
                    self.classifier.suggest(fld, schema), timeout=self.timeout_seconds
                )
            except (asyncio.TimeoutError, ExternalClassifierTimeout):
                outcome = "timeout"
                logger.warning(
                    "external_classifier_timeout",
                    field=fld.name,
                    provider=provider,
                    timeout_seconds=self.timeout_seconds,
                )
            except ClassifierError as e:
                outcome = "error"
                logger.warning(
                    "external_classifier_failed",
                    field=fld.name,
                    provider=provider,
                    error_code=e.error_code,
                    error=e.message,
                )
            except Exception as e:
                outcome = "error"
                logger.warning(
                    "external_classifier_failed",
                    field=fld.name,
                    provider=provider,
                    error_code=type(e).__name__,
                    error=str(e),
                )

            latency_ms = int((time.monotonic() - started) * 1000)
            context.external_calls += 1
            context.external_cost_usd += cost
            external_classifier_calls_total.labels(outcome=outcome).inc()
            if context.cost_tracker is not None:
                await context.cost_tracker.record(
                    provider=provider,
                    operation="classify_field",
                    cost_usd=cost,
                    latency_ms=latency_ms,
                    outcome=outcome,
                )

            if suggestion is None or suggestion.target_field is None:
                continue
            out.append(MappingCandidate(
                fld.name,
                suggestion.target_field,
                max(EXTERNAL_MIN, min(EXTERNAL_MAX, suggestion.confidence)),
                self.kind,
                suggestion.reasoning or f"Suggested by {provider}",
            ))
        return out


STRATEGY_TYPES: dict[StrategyKind, type[MappingStrategy]] = {
    StrategyKind.EXACT: ExactStrategy,
    StrategyKind.HISTORICAL: HistoricalStrategy,
    StrategyKind.STATISTICAL: StatisticalStrategy,
    StrategyKind.FUZZY: FuzzyStrategy,
    StrategyKind.EXTERNAL: ExternalStrategy,
}


def check_exhaustive() -> None:
    """Every StrategyKind must have exactly one implementation."""
    missing = set(StrategyKind) - set(STRATEGY_TYPES)
    if missing:
        raise RuntimeError(f"No strategy implementation for: {sorted(k.value for k in missing)}")
