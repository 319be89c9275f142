"""
Validation and auto-fix suggestions for mapped rows.

Rows are validated against the target schema, each violation class maps to at
most one typed fix with a base confidence, and that confidence is nudged by how
well fixes of the same type have held up in past commits.
"""

import re
from collections import defaultdict
from typing import Any, Iterable, Optional

import structlog
from dateutil import parser as date_parser

from app.config import settings
from app.models.enums import DataType, FixType, SemanticType, Severity
from app.pipeline.field_extractor import (
    RE_DATE_ISO,
    RE_EMAIL,
    RE_NUMBER,
    RE_URL,
    as_text,
    is_null,
    to_number,
)
from app.schemas.imports import AutoFix, TargetField, TargetSchema, ValidationIssue
from app.storage.repository import ImportRepository

logger = structlog.get_logger(__name__)

BASE_FIX_CONFIDENCE = {
    FixType.STRIP_CURRENCY: 85,
    FixType.ABSOLUTE_VALUE: 80,
    FixType.COERCE_STRING: 90,
    FixType.DEFAULT_ZERO: 70,
    FixType.NORMALIZE_EMAIL: 75,
    FixType.NORMALIZE_DATE: 75,
    FixType.TRIM_WHITESPACE: 95,
}

EFFECTIVENESS_ALPHA = 0.2
NEUTRAL_EFFECTIVENESS = 0.5
MAX_ADJUSTMENT = 15

# Fields where a negative number is never valid
NON_NEGATIVE_FIELDS = {"price", "compareAtPrice", "stock", "lowStockThreshold"}
COUNT_FIELDS = {"stock", "lowStockThreshold"}
CODE_FIELDS = {"sku", "gtin"}


def _is_email_field(target: TargetField) -> bool:
    return SemanticType.EMAIL in target.semantic_types or "email" in target.name.lower()


def _is_url_field(target: TargetField) -> bool:
    return SemanticType.URL in target.semantic_types or bool(re.search(r"url|link", target.name, re.I))


class ErrorRecoveryService:

    def __init__(
        self,
        repository: Optional[ImportRepository] = None,
        auto_apply_threshold: Optional[int] = None,
    ):
        self.repository = repository
        self.auto_apply_threshold = (
            auto_apply_threshold if auto_apply_threshold is not None
            else settings.AUTOFIX_AUTO_APPLY_THRESHOLD
        )
        self.effectiveness: dict[str, dict] = {}

    async def load(self) -> None:
        """Pull learned fix effectiveness from the repository."""
        if self.repository is not None:
            self.effectiveness = await self.repository.load_fix_effectiveness()

    # ── Validation ───────────────────────────────────────────

    def validate(self, rows: list[dict[str, Any]], schema: TargetSchema) -> list[ValidationIssue]:
        issues = []
        for index, row in enumerate(rows):
            for target in schema.fields:
                if target.name not in row and not target.required:
                    continue
                issue = self._check(index, target, row.get(target.name))
                if issue is not None:
                    issues.append(issue)
        return issues

    def _check(self, index: int, target: TargetField, value: Any) -> Optional[ValidationIssue]:
        text = as_text(value)
        if value is None or is_null(text):
            if target.required:
                return ValidationIssue(
                    row_index=index, field=target.name, value=value, rule="required",
                    message=f"'{target.name}' is required",
                )
            return None

        def issue(rule: str, severity: Severity, message: str) -> ValidationIssue:
            return ValidationIssue(
                row_index=index, field=target.name, value=value,
                rule=rule, severity=severity, message=message,
            )

        if target.data_type in (DataType.NUMBER, DataType.INTEGER):
            if isinstance(value, bool):
                return issue("invalid_number", Severity.ERROR, f"'{target.name}' must be numeric")
            number = to_number(text)
            if number is None:
                return issue("invalid_number", Severity.ERROR, f"'{text}' is not a number")
            if not RE_NUMBER.match(text):
                return issue("invalid_number", Severity.WARNING, f"'{text}' contains currency or separators")
            if number < 0 and target.name in NON_NEGATIVE_FIELDS:
                return issue("invalid_number", Severity.ERROR, f"'{target.name}' cannot be negative")
            if target.data_type == DataType.INTEGER and number != int(number):
                return issue("invalid_type", Severity.WARNING, f"'{text}' is not a whole number")
            return None

        if target.name in CODE_FIELDS and not isinstance(value, str):
            return issue("invalid_type", Severity.WARNING, f"'{target.name}' should be text, got {type(value).__name__}")

        if target.data_type == DataType.DATE:
            if RE_DATE_ISO.match(text):
                return None
            try:
                date_parser.parse(text)
            except (ValueError, OverflowError):
                return issue("invalid_date", Severity.ERROR, f"'{text}' is not a date")
            return issue("invalid_date", Severity.WARNING, f"'{text}' is not ISO formatted")

        if _is_email_field(target) and not RE_EMAIL.match(text):
            return issue("invalid_email", Severity.WARNING, f"'{text}' is not a valid email")

        if _is_url_field(target) and not RE_URL.match(text):
            return issue("invalid_url", Severity.WARNING, f"'{text}' is not a valid URL")

        if isinstance(value, str) and value != value.strip():
            return issue("untrimmed", Severity.WARNING, "Leading or trailing whitespace")

        return None

    # ── Fix suggestion ───────────────────────────────────────

    def analyze(self, issues: list[ValidationIssue]) -> list[AutoFix]:
        fixes = []
        for issue in issues:
            proposal = self._propose(issue)
            if proposal is None:
                continue
            fix_type, new_value, description = proposal
            confidence = self.effective_confidence(fix_type)
            fixes.append(AutoFix(
                fix_type=fix_type,
                row_index=issue.row_index,
                field=issue.field,
                original_value=issue.value,
                new_value=new_value,
                confidence=confidence,
                auto_applicable=confidence >= self.auto_apply_threshold,
                description=description,
            ))
        return fixes

    @staticmethod
    def _propose(issue: ValidationIssue) -> Optional[tuple[FixType, Any, str]]:
        # Required violations have no safe default; manual only
        if issue.rule == "required":
            return None

        text = as_text(issue.value)
        if issue.rule == "invalid_number":
            number = to_number(text)
            if number is not None and number < 0:
                return FixType.ABSOLUTE_VALUE, abs(number), "Use the absolute value"
            if number is not None:
                return FixType.STRIP_CURRENCY, number, "Strip currency symbols and separators"
            if issue.field in COUNT_FIELDS:
                return FixType.DEFAULT_ZERO, 0, "Default non-numeric count to 0"
            return None

        if issue.rule == "invalid_type" and issue.field in CODE_FIELDS:
            return FixType.COERCE_STRING, text, "Store code as text"

        if issue.rule == "invalid_email":
            cleaned = text.strip().lower()
            if RE_EMAIL.match(cleaned):
                return FixType.NORMALIZE_EMAIL, cleaned, "Lowercase and trim email"
            return None

        if issue.rule == "invalid_date":
            try:
                parsed = date_parser.parse(text)
            except (ValueError, OverflowError):
                return None
            return FixType.NORMALIZE_DATE, parsed.date().isoformat(), "Normalize date to ISO 8601"

        if issue.rule == "untrimmed":
            return FixType.TRIM_WHITESPACE, text, "Trim whitespace"

        return None

    def effective_confidence(self, fix_type: FixType) -> int:
        """Base confidence shifted by learned effectiveness, at most 15 points either way."""
        stats = self.effectiveness.get(fix_type.value)
        base = BASE_FIX_CONFIDENCE[fix_type]
        if not stats:
            return base
        effectiveness = stats.get("effectiveness", NEUTRAL_EFFECTIVENESS)
        adjustment = round((effectiveness - NEUTRAL_EFFECTIVENESS) * 2 * MAX_ADJUSTMENT)
        adjustment = max(-MAX_ADJUSTMENT, min(MAX_ADJUSTMENT, adjustment))
        return max(0, min(100, base + adjustment))

    # ── Application ──────────────────────────────────────────

    def select_applicable(
        self,
        fixes: list[AutoFix],
        approved_types: Optional[Iterable[FixType]] = None,
    ) -> list[AutoFix]:
        approved = set(approved_types or [])
        return [f for f in fixes if f.auto_applicable or f.fix_type in approved]

    def apply_fixes(
        self,
        rows: list[dict[str, Any]],
        fixes: list[AutoFix],
        approved_types: Optional[Iterable[FixType]] = None,
    ) -> list[dict[str, Any]]:
        """Return fixed copies of the rows. The input rows are never modified."""
        merged = [dict(row) for row in rows]
        for fix in self.select_applicable(fixes, approved_types):
            if 0 <= fix.row_index < len(merged):
                merged[fix.row_index][fix.field] = fix.new_value
        return merged

    # ── Learning ─────────────────────────────────────────────

    async def record_outcome(self, fix_type: FixType, success: bool) -> dict:
        """Fold one observed outcome into the fix type's rolling effectiveness."""
        stats = dict(self.effectiveness.get(fix_type.value) or {
            "effectiveness": NEUTRAL_EFFECTIVENESS,
            "applied": 0,
            "succeeded": 0,
        })
        observed = 1.0 if success else 0.0
        stats["effectiveness"] = round(
            (1 - EFFECTIVENESS_ALPHA) * stats["effectiveness"] + EFFECTIVENESS_ALPHA * observed, 4
        )
        stats["applied"] += 1
        stats["succeeded"] += int(success)
        self.effectiveness[fix_type.value] = stats

        if self.repository is not None:
            await self.repository.save_fix_effectiveness(fix_type.value, stats)
        return stats

    # ── Bulk helpers ─────────────────────────────────────────

    @staticmethod
    def fixes_by_type(fixes: list[AutoFix]) -> dict[str, list[AutoFix]]:
        grouped: dict[str, list[AutoFix]] = defaultdict(list)
        for fix in fixes:
            grouped[fix.fix_type.value].append(fix)
        return dict(grouped)

    @staticmethod
    def summary(issues: list[ValidationIssue], fixes: list[AutoFix]) -> dict:
        fixed_keys = {(f.row_index, f.field) for f in fixes}
        return {
            "total_issues": len(issues),
            "errors": sum(1 for i in issues if i.severity == Severity.ERROR),
            "warnings": sum(1 for i in issues if i.severity == Severity.WARNING),
            "total_fixes": len(fixes),
            "auto_applicable": sum(1 for f in fixes if f.auto_applicable),
            "requires_approval": sum(1 for f in fixes if not f.auto_applicable),
            "manual_only": sum(1 for i in issues if (i.row_index, i.field) not in fixed_keys),
            "by_type": {k: len(v) for k, v in ErrorRecoveryService.fixes_by_type(fixes).items()},
        }
