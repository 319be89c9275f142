"""
Tests for validation and auto-fix suggestions.
"""

import pytest

from app.models.enums import FixType, Severity
from app.pipeline.error_recovery import BASE_FIX_CONFIDENCE, ErrorRecoveryService
from app.schemas.imports import TargetSchema


SCHEMA = TargetSchema.from_names(["name", "price", "sku", "stock", "createdAt"])


def row(**overrides):
    base = {"name": "Mug", "price": "12.50", "sku": "ABC-001", "stock": "5", "createdAt": "2024-01-15"}
    base.update(overrides)
    return base


@pytest.fixture
def service(repository):
    return ErrorRecoveryService(repository)


def only_issue(service, **overrides):
    issues = service.validate([row(**overrides)], SCHEMA)
    assert len(issues) == 1
    return issues[0]


class TestValidate:

    def test_clean_row_has_no_issues(self, service):
        assert service.validate([row()], SCHEMA) == []

    def test_missing_required_field(self, service):
        issue = only_issue(service, name="")
        assert issue.rule == "required"
        assert issue.severity == Severity.ERROR

    def test_required_field_absent_from_row(self, service):
        data = row()
        del data["sku"]
        issues = service.validate([data], SCHEMA)
        assert [(i.field, i.rule) for i in issues] == [("sku", "required")]

    def test_currency_formatted_number_is_a_warning(self, service):
        issue = only_issue(service, price="$12.50")
        assert issue.rule == "invalid_number"
        assert issue.severity == Severity.WARNING

    def test_unparseable_number_is_an_error(self, service):
        issue = only_issue(service, price="twelve")
        assert issue.rule == "invalid_number"
        assert issue.severity == Severity.ERROR

    def test_negative_price_is_an_error(self, service):
        issue = only_issue(service, price="-3")
        assert issue.severity == Severity.ERROR

    def test_numeric_sku_is_a_type_warning(self, service):
        issue = only_issue(service, sku=12345)
        assert issue.rule == "invalid_type"
        assert issue.severity == Severity.WARNING

    def test_non_iso_date_is_a_warning(self, service):
        issue = only_issue(service, createdAt="15/01/2024")
        assert issue.rule == "invalid_date"
        assert issue.severity == Severity.WARNING

    def test_garbage_date_is_an_error(self, service):
        issue = only_issue(service, createdAt="not a date")
        assert issue.rule == "invalid_date"
        assert issue.severity == Severity.ERROR

    def test_untrimmed_text(self, service):
        issue = only_issue(service, name=" Mug ")
        assert issue.rule == "untrimmed"


class TestAnalyze:

    def fix_for(self, service, **overrides):
        fixes = service.analyze(service.validate([row(**overrides)], SCHEMA))
        assert len(fixes) == 1
        return fixes[0]

    def test_strip_currency(self, service):
        fix = self.fix_for(service, price="$1,299.00")
        assert fix.fix_type == FixType.STRIP_CURRENCY
        assert fix.new_value == 1299.0
        assert fix.confidence == BASE_FIX_CONFIDENCE[FixType.STRIP_CURRENCY]
        assert fix.auto_applicable

    def test_absolute_value_needs_approval(self, service):
        fix = self.fix_for(service, price="-3")
        assert fix.fix_type == FixType.ABSOLUTE_VALUE
        assert fix.new_value == 3.0
        assert not fix.auto_applicable

    def test_default_zero_for_counts(self, service):
        fix = self.fix_for(service, stock="lots")
        assert fix.fix_type == FixType.DEFAULT_ZERO
        assert fix.new_value == 0

    def test_coerce_code_to_string(self, service):
        fix = self.fix_for(service, sku=12345)
        assert fix.fix_type == FixType.COERCE_STRING
        assert fix.new_value == "12345"

    def test_normalize_date(self, service):
        fix = self.fix_for(service, createdAt="15/01/2024")
        assert fix.fix_type == FixType.NORMALIZE_DATE
        assert fix.new_value == "2024-01-15"

    def test_trim_whitespace(self, service):
        fix = self.fix_for(service, name="  Mug ")
        assert fix.fix_type == FixType.TRIM_WHITESPACE
        assert fix.new_value == "Mug"

    def test_required_violation_has_no_fix(self, service):
        issues = service.validate([row(name="")], SCHEMA)
        assert service.analyze(issues) == []

    def test_unparseable_price_has_no_fix(self, service):
        issues = service.validate([row(price="twelve")], SCHEMA)
        assert service.analyze(issues) == []


class TestApplyFixes:

    def test_input_rows_are_not_modified(self, service):
        rows = [row(price="$5.00")]
        fixes = service.analyze(service.validate(rows, SCHEMA))
        fixed = service.apply_fixes(rows, fixes)
        assert rows[0]["price"] == "$5.00"
        assert fixed[0]["price"] == 5.0

    def test_low_confidence_fix_needs_approved_type(self, service):
        rows = [row(price="-3")]
        fixes = service.analyze(service.validate(rows, SCHEMA))
        assert service.apply_fixes(rows, fixes)[0]["price"] == "-3"
        approved = service.apply_fixes(rows, fixes, approved_types=[FixType.ABSOLUTE_VALUE])
        assert approved[0]["price"] == 3.0

    def test_summary_counts(self, service):
        rows = [row(price="$5.00"), row(name=""), row(price="-1")]
        issues = service.validate(rows, SCHEMA)
        fixes = service.analyze(issues)
        summary = service.summary(issues, fixes)
        assert summary["total_issues"] == 3
        assert summary["errors"] == 2
        assert summary["warnings"] == 1
        assert summary["total_fixes"] == 2
        assert summary["auto_applicable"] == 1
        assert summary["requires_approval"] == 1
        assert summary["manual_only"] == 1
        assert summary["by_type"] == {"strip_currency": 1, "absolute_value": 1}


class TestEffectiveness:

    def test_unknown_history_uses_base_confidence(self, service):
        assert service.effective_confidence(FixType.TRIM_WHITESPACE) == 95

    def test_adjustment_is_bounded(self, service):
        service.effectiveness = {
            "strip_currency": {"effectiveness": 1.0},
            "default_zero": {"effectiveness": 0.0},
        }
        assert service.effective_confidence(FixType.STRIP_CURRENCY) == 100
        assert service.effective_confidence(FixType.DEFAULT_ZERO) == 55

    async def test_record_outcome_updates_and_persists(self, service, repository):
        stats = await service.record_outcome(FixType.STRIP_CURRENCY, success=True)
        assert stats["effectiveness"] == pytest.approx(0.6)
        assert stats["applied"] == 1
        assert stats["succeeded"] == 1
        assert repository.fix_effectiveness["strip_currency"]["applied"] == 1

        stats = await service.record_outcome(FixType.STRIP_CURRENCY, success=False)
        assert stats["effectiveness"] == pytest.approx(0.48)
        assert stats["succeeded"] == 1

    async def test_failures_pull_confidence_down(self, service):
        for _ in range(5):
            await service.record_outcome(FixType.STRIP_CURRENCY, success=False)
        assert service.effective_confidence(FixType.STRIP_CURRENCY) < BASE_FIX_CONFIDENCE[FixType.STRIP_CURRENCY]

    async def test_load_reads_repository(self, repository):
        repository.fix_effectiveness["trim_whitespace"] = {"effectiveness": 0.0, "applied": 3, "succeeded": 0}
        service = ErrorRecoveryService(repository)
        await service.load()
        assert service.effective_confidence(FixType.TRIM_WHITESPACE) == 80
