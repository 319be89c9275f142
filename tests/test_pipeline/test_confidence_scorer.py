"""
Tests for session confidence scoring.
"""

import pytest

from app.models.enums import Severity, StrategyKind
from app.pipeline.confidence_scorer import score_session
from app.schemas.imports import (
    FieldMapping,
    MappingMetadata,
    MappingResult,
    TargetSchema,
    ValidationIssue,
)


def result(confidences, missing=None, ambiguities=0):
    mappings = []
    for i, conf in enumerate(confidences):
        if conf is None:
            mappings.append(FieldMapping(source_field=f"f{i}"))
        else:
            mappings.append(FieldMapping(
                source_field=f"f{i}", target_field=f"t{i}", confidence=conf, strategy=StrategyKind.FUZZY
            ))
    return MappingResult(
        mappings=mappings,
        metadata=MappingMetadata(
            total_fields=len(mappings),
            required_targets_missing=missing or [],
            ambiguities=[{"source_field": "f0"}] * ambiguities,
        ),
    )


def error(row_index):
    return ValidationIssue(row_index=row_index, field="t0", rule="required", severity=Severity.ERROR)


class TestAggregate:

    def test_all_exact_passes(self):
        score = score_session(result([100, 100, 100]), [], 10, threshold=0.7)
        assert score.aggregate_confidence == 1.0
        assert score.validation_status == "PASS"
        assert score.hard_gate_failures == []

    def test_mixed_confidence_warns(self):
        score = score_session(result([85, 83, 100]), [], 3, threshold=0.7)
        assert score.aggregate_confidence == pytest.approx(0.8933, abs=1e-4)
        assert score.validation_status == "WARN"

    def test_below_threshold_fails(self):
        score = score_session(result([60, 65]), [], 3, threshold=0.7)
        assert score.aggregate_confidence < 0.7
        assert score.validation_status == "FAIL"

    def test_unmapped_fields_are_penalized(self):
        score = score_session(result([100, 100, 100, None]), [], 10, threshold=0.7)
        assert score.aggregate_confidence == pytest.approx(0.875)
        assert "WARN_1_UNMAPPED_FIELDS" in score.warnings

    def test_error_rows_reduce_confidence_and_fail(self):
        issues = [error(0), error(0), error(2)]
        score = score_session(result([100, 100]), issues, 4, threshold=0.7)
        assert score.aggregate_confidence == pytest.approx(0.5)
        assert score.components["error_rows"] == 2
        assert score.validation_status == "FAIL"

    def test_warnings_do_not_reduce_confidence(self):
        warning = ValidationIssue(row_index=0, field="t0", rule="untrimmed", severity=Severity.WARNING)
        score = score_session(result([100]), [warning], 1, threshold=0.7)
        assert score.aggregate_confidence == 1.0
        assert "WARN_VALIDATION_WARNINGS" in score.warnings

    def test_ambiguity_is_penalized(self):
        score = score_session(result([100, 100], ambiguities=1), [], 1, threshold=0.7)
        assert score.aggregate_confidence == pytest.approx(0.95)

    def test_result_is_bounded(self):
        score = score_session(result([100]), [error(i) for i in range(5)], 2, threshold=0.7)
        assert 0.0 <= score.aggregate_confidence <= 1.0


class TestHardGates:

    def test_no_fields(self):
        score = score_session(MappingResult(mappings=[], metadata=MappingMetadata()), [], 0)
        assert score.hard_gate_failures == ["NO_FIELDS"]
        assert score.validation_status == "FAIL"

    def test_nothing_mapped(self):
        score = score_session(result([None, None]), [], 5, threshold=0.7)
        assert "HARD_GATE_NOTHING_MAPPED" in score.hard_gate_failures
        assert score.aggregate_confidence == 0.0

    def test_required_targets_missing(self):
        schema = TargetSchema.from_names(["name", "price"])
        score = score_session(result([100], missing=["price"]), [], 1, target_schema=schema, threshold=0.7)
        assert "HARD_GATE_REQUIRED_TARGETS_MISSING" in score.hard_gate_failures
        assert score.validation_status == "FAIL"
        assert score.aggregate_confidence == 1.0
