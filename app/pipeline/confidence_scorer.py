"""
Session confidence scoring.

Aggregate confidence drives the auto-advance decision: mapped-field confidence,
discounted for unmapped fields, rows still carrying errors, and ambiguous
mappings. Hard gates override the number.
"""

from typing import Optional

from pydantic import BaseModel

from app.config import settings
from app.models.enums import Severity
from app.schemas.imports import MappingResult, TargetSchema, ValidationIssue


class ConfidenceResult(BaseModel):
    """Aggregate confidence for a session at preview time."""
    aggregate_confidence: float = 0.0
    validation_status: str = "FAIL"  # PASS, WARN, FAIL
    hard_gate_failures: list[str] = []
    warnings: list[str] = []
    components: dict = {}


UNRESOLVED_PENALTY = 0.5
AMBIGUITY_PENALTY = 0.1


def score_session(
    mapping_result: MappingResult,
    issues: list[ValidationIssue],
    validated_rows: int,
    target_schema: Optional[TargetSchema] = None,
    threshold: Optional[float] = None,
) -> ConfidenceResult:
    """
    Score a mapped and validated session.

    aggregate = resolved_mean x (1 - 0.5 x unresolved) x (1 - error_density)
                x (1 - 0.1 x ambiguity)
    """
    threshold = threshold if threshold is not None else settings.AUTO_ADVANCE_THRESHOLD
    mappings = mapping_result.mappings

    if not mappings:
        return ConfidenceResult(
            aggregate_confidence=0.0,
            validation_status="FAIL",
            hard_gate_failures=["NO_FIELDS"],
        )

    # ── Components ───────────────────────────────────────────
    n = len(mappings)
    mapped = [m for m in mappings if m.target_field is not None]
    mean = sum(m.confidence for m in mappings) / n / 100
    resolved_mean = (sum(m.confidence for m in mapped) / len(mapped) / 100) if mapped else 0.0
    unresolved = (n - len(mapped)) / n

    error_rows = {i.row_index for i in issues if i.severity == Severity.ERROR}
    error_density = len(error_rows) / max(1, validated_rows)
    ambiguity = len(mapping_result.metadata.ambiguities) / n

    aggregate = (
        resolved_mean
        * (1 - UNRESOLVED_PENALTY * unresolved)
        * (1 - error_density)
        * (1 - AMBIGUITY_PENALTY * ambiguity)
    )
    aggregate = round(max(0.0, min(1.0, aggregate)), 4)

    # ── Hard gates ───────────────────────────────────────────
    hard_gate_failures = []
    warnings = []

    if not mapped:
        hard_gate_failures.append("HARD_GATE_NOTHING_MAPPED")

    missing = mapping_result.metadata.required_targets_missing
    if target_schema is not None:
        required = {f.name for f in target_schema.fields if f.required}
        missing = [name for name in missing if name in required]
    if missing:
        hard_gate_failures.append("HARD_GATE_REQUIRED_TARGETS_MISSING")

    # ── Warnings ─────────────────────────────────────────────
    if unresolved > 0:
        warnings.append(f"WARN_{n - len(mapped)}_UNMAPPED_FIELDS")
    if mapping_result.metadata.ambiguities:
        warnings.append(f"WARN_{len(mapping_result.metadata.ambiguities)}_AMBIGUOUS_MAPPINGS")
    if issues and not error_rows:
        warnings.append("WARN_VALIDATION_WARNINGS")

    # ── Status ───────────────────────────────────────────────
    if hard_gate_failures or error_rows:
        validation_status = "FAIL"
    elif aggregate >= settings.CONFIDENCE_PASS_THRESHOLD:
        validation_status = "PASS"
    elif aggregate >= threshold:
        validation_status = "WARN"
    else:
        validation_status = "FAIL"

    return ConfidenceResult(
        aggregate_confidence=aggregate,
        validation_status=validation_status,
        hard_gate_failures=hard_gate_failures,
        warnings=warnings,
        components={
            "mean": round(mean, 4),
            "resolved_mean": round(resolved_mean, 4),
            "unresolved": round(unresolved, 4),
            "error_density": round(error_density, 4),
            "ambiguity": round(ambiguity, 4),
            "error_rows": len(error_rows),
        },
    )
