"""
Approval routing for imports that cannot auto-advance.

Risk is scored from the confidence gap, data anomalies, volume, revenue-field
exposure and a security scan of sample values. The risk level picks the
approvers, the deadline and the escalation path. Decisions are append-only and
a request accepts exactly one terminal decision.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import structlog

from app.config import settings
from app.errors import (
    AlreadyResolvedError,
    ApprovalNotFoundError,
    EscalationExhaustedError,
    ImportEngineError,
    UnauthorizedApproverError,
)
from app.models.enums import ApprovalStatus, ApprovalType, DecisionType, RiskLevel, Severity
from app.observability.metrics import (
    approval_decisions_total,
    approval_queue_depth,
    approval_requests_total,
)
from app.pipeline.field_extractor import as_text
from app.schemas.imports import (
    ApprovalDecision,
    ApprovalRequest,
    FieldMapping,
    RiskAssessment,
    TargetSchema,
    ValidationIssue,
    utcnow,
)
from app.storage.repository import ImportRepository

logger = structlog.get_logger(__name__)

SYSTEM_APPROVER = "system"


@dataclass(frozen=True)
class RoutingRule:
    timeout_minutes: float
    assignees: tuple[str, ...]
    escalation_path: tuple[str, ...]
    priority: int


DEFAULT_ROUTING: dict[RiskLevel, RoutingRule] = {
    RiskLevel.LOW: RoutingRule(240, ("data_analyst",), ("senior_analyst",), priority=7),
    RiskLevel.MEDIUM: RoutingRule(120, ("senior_analyst",), ("team_lead",), priority=5),
    RiskLevel.HIGH: RoutingRule(60, ("team_lead",), ("director",), priority=3),
    RiskLevel.CRITICAL: RoutingRule(30, ("director",), ("executive",), priority=1),
}

TYPE_TIMEOUT_MULTIPLIERS = {
    ApprovalType.IMPORT_APPROVAL: 1.0,
    ApprovalType.MAPPING_REVIEW: 1.5,
    ApprovalType.DATA_QUALITY: 1.0,
    ApprovalType.SECURITY_REVIEW: 0.5,
}

# ── Risk checkpoints ─────────────────────────────────────────
INJECTION_PATTERNS = [
    re.compile(r"<script", re.I),
    re.compile(r"\bDROP\s+TABLE\b", re.I),
    re.compile(r";\s*--"),
    re.compile(r"'\s*OR\s+1\s*=\s*1", re.I),
]
SENSITIVE_FIELD_NAMES = re.compile(r"password|passwd|ssn|credit_?card|card_?number|token|secret", re.I)

LOW_CONFIDENCE_MAPPING = 70
CRITICAL_FIELD_CONFIDENCE = 85


def risk_level_for(score: int) -> RiskLevel:
    if score >= 75:
        return RiskLevel.CRITICAL
    if score >= 50:
        return RiskLevel.HIGH
    if score >= 25:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess_risk(
    aggregate_confidence: float,
    threshold: float,
    mappings: list[FieldMapping],
    issues: list[ValidationIssue],
    total_records: int,
    target_schema: Optional[TargetSchema] = None,
    sample_rows: Optional[list[dict[str, Any]]] = None,
) -> RiskAssessment:
    factors = []
    score = 0.0

    gap = max(0.0, threshold - aggregate_confidence)
    if gap > 0:
        gap_points = min(30.0, gap * 100)
        score += gap_points
        factors.append(f"confidence {aggregate_confidence:.2f} is {gap:.2f} below threshold")

    errors = [i for i in issues if i.severity == Severity.ERROR]
    if errors:
        score += min(20, 2 * len(errors))
        factors.append(f"{len(errors)} validation error(s)")

    weak = [m for m in mappings if m.target_field is not None and m.confidence < LOW_CONFIDENCE_MAPPING]
    if weak:
        score += min(15, 5 * len(weak))
        factors.append(f"{len(weak)} low-confidence mapping(s)")

    # Performance checkpoint
    if total_records > 100_000:
        score += 20
        factors.append(f"{total_records} records")
    elif total_records > 10_000:
        score += 10
        factors.append(f"{total_records} records")

    if target_schema is not None:
        critical = {f.name for f in target_schema.fields if f.critical}
        exposed = [
            m for m in mappings
            if m.target_field in critical and m.confidence < CRITICAL_FIELD_CONFIDENCE
        ]
        if exposed:
            score += min(20, 10 * len(exposed))
            factors.append("revenue fields mapped below 85: " + ", ".join(m.target_field for m in exposed))

    # Security checkpoint
    requires_security_review = False
    for row in sample_rows or []:
        if any(p.search(as_text(v)) for v in row.values() for p in INJECTION_PATTERNS):
            requires_security_review = True
            score += 25
            factors.append("injection-like values in sample")
            break
    sensitive = [m.source_field for m in mappings if SENSITIVE_FIELD_NAMES.search(m.source_field)]
    if sensitive:
        requires_security_review = True
        score += 15
        factors.append("sensitive fields: " + ", ".join(sensitive))

    risk_score = int(round(min(100.0, score)))
    level = risk_level_for(risk_score)
    return RiskAssessment(
        risk_level=level,
        risk_score=risk_score,
        factors=factors,
        recommendation=DecisionType.APPROVE if risk_score < 50 else DecisionType.REJECT,
        affected_records=total_records,
        requires_security_review=requires_security_review,
    )


def request_type_for(assessment: RiskAssessment, issues: list[ValidationIssue]) -> ApprovalType:
    if assessment.requires_security_review:
        return ApprovalType.SECURITY_REVIEW
    if any(i.severity == Severity.ERROR for i in issues):
        return ApprovalType.DATA_QUALITY
    if any("mapping" in f for f in assessment.factors):
        return ApprovalType.MAPPING_REVIEW
    return ApprovalType.IMPORT_APPROVAL


class ApprovalRouter:

    def __init__(
        self,
        repository: Optional[ImportRepository] = None,
        routing: Optional[dict[RiskLevel, RoutingRule]] = None,
        approver_pool: Optional[dict[str, list[str]]] = None,
    ):
        self.repository = repository
        self.routing = routing or DEFAULT_ROUTING
        self.approver_pool = approver_pool if approver_pool is not None else settings.APPROVER_POOL
        self.requests: dict[str, ApprovalRequest] = {}
        self.decisions: list[ApprovalDecision] = []

    # ── Creation ─────────────────────────────────────────────

    def timeout_for(self, risk_level: RiskLevel, request_type: ApprovalType) -> timedelta:
        rule = self.routing[risk_level]
        return timedelta(minutes=rule.timeout_minutes * TYPE_TIMEOUT_MULTIPLIERS[request_type])

    async def create_request(
        self,
        session_id: str,
        assessment: RiskAssessment,
        request_type: ApprovalType = ApprovalType.IMPORT_APPROVAL,
        context: Optional[dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """Open an approval request. A session never has more than one pending."""
        existing = self.pending_for_session(session_id)
        if existing is not None:
            logger.info("approval_request_reused", session_id=session_id, request_id=existing.request_id)
            return existing

        rule = self.routing[assessment.risk_level]
        request = ApprovalRequest(
            session_id=session_id,
            request_type=request_type,
            risk_level=assessment.risk_level,
            risk_score=assessment.risk_score,
            priority=rule.priority,
            assigned_to=list(rule.assignees),
            escalation_path=list(rule.escalation_path),
            deadline=utcnow() + self.timeout_for(assessment.risk_level, request_type),
            system_recommendation=assessment.recommendation,
            context={**(context or {}), "risk": assessment.model_dump(mode="json")},
        )
        await self._save(request)
        approval_requests_total.labels(risk_level=request.risk_level.value).inc()

        logger.info(
            "approval_requested",
            session_id=session_id,
            request_id=request.request_id,
            risk_level=request.risk_level.value,
            risk_score=request.risk_score,
            assigned_to=request.assigned_to,
            deadline=request.deadline.isoformat(),
        )
        return request

    # ── Decisions ────────────────────────────────────────────

    def get(self, request_id: str) -> ApprovalRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise ApprovalNotFoundError(f"Approval request {request_id} not found")
        return request

    def is_authorized(self, request: ApprovalRequest, approver: str) -> bool:
        if approver in request.assigned_to:
            return True
        return any(approver in self.approver_pool.get(role, []) for role in request.assigned_to)

    async def decide(
        self,
        request_id: str,
        approver: str,
        decision: DecisionType,
        reasoning: Optional[str] = None,
        delegate_to: Optional[str] = None,
        confidence_at_decision: Optional[float] = None,
    ) -> tuple[ApprovalDecision, ApprovalRequest]:
        """
        Apply one decision. Returns the audit record and the request that is
        now current for the session (a fresh one after escalation).
        """
        request = self.get(request_id)
        if not request.is_pending:
            raise AlreadyResolvedError(
                f"Approval request {request_id} is already {request.status.value}"
            )
        if not self.is_authorized(request, approver):
            raise UnauthorizedApproverError(
                f"{approver} is not assigned to approval request {request_id}"
            )
        if decision == DecisionType.ESCALATE and not request.escalation_path:
            raise EscalationExhaustedError(f"No escalation path left for request {request_id}")
        if decision == DecisionType.DELEGATE and not delegate_to:
            raise ImportEngineError("Delegation needs a delegate", error_code="ERR_DELEGATE_TARGET")

        record = await self._record_decision(request, approver, decision, reasoning, confidence_at_decision)

        current = request
        if decision == DecisionType.APPROVE:
            await self._resolve(request, ApprovalStatus.APPROVED)
        elif decision == DecisionType.REJECT:
            await self._resolve(request, ApprovalStatus.REJECTED)
        elif decision == DecisionType.ESCALATE:
            current = await self._escalate(request)
        else:
            request.assigned_to = [delegate_to]
            await self._save(request)
            logger.info("approval_delegated", request_id=request_id, by=approver, to=delegate_to)

        return record, current

    async def handle_timeout(self, request_id: str, fallback: Optional[str] = None) -> ApprovalRequest:
        """
        Deadline passed. Escalate when the fallback says so and a path remains,
        otherwise mark the request timed out. A request that was decided in the
        meantime is returned unchanged.
        """
        fallback = fallback or settings.APPROVAL_TIMEOUT_FALLBACK
        request = self.get(request_id)
        if not request.is_pending:
            return request

        if fallback == "escalate" and request.escalation_path:
            await self._record_decision(
                request, SYSTEM_APPROVER, DecisionType.ESCALATE, "Deadline passed", None
            )
            return await self._escalate(request)

        await self._resolve(request, ApprovalStatus.TIMEOUT)
        logger.warning(
            "approval_timed_out",
            request_id=request_id,
            session_id=request.session_id,
            fallback=fallback,
        )
        return request

    async def withdraw(self, request_id: str, reason: str) -> Optional[ApprovalRequest]:
        """Close a pending request whose session was cancelled. No decision is recorded."""
        request = self.requests.get(request_id)
        if request is None or not request.is_pending:
            return request
        request.context = {**request.context, "withdrawn": reason}
        await self._resolve(request, ApprovalStatus.REJECTED)
        logger.info("approval_withdrawn", request_id=request_id, session_id=request.session_id, reason=reason)
        return request

    # ── Queue views ──────────────────────────────────────────

    def pending_requests(self, limit: int = 50, offset: int = 0) -> list[ApprovalRequest]:
        pending = sorted(
            (r for r in self.requests.values() if r.is_pending),
            key=lambda r: (r.priority, r.created_at),
        )
        return pending[offset:offset + limit]

    def pending_for_session(self, session_id: str) -> Optional[ApprovalRequest]:
        for request in self.requests.values():
            if request.session_id == session_id and request.is_pending:
                return request
        return None

    def queue_stats(self) -> dict:
        counts = {status.value: 0 for status in ApprovalStatus}
        by_risk = {level.value: 0 for level in RiskLevel}
        for request in self.requests.values():
            counts[request.status.value] += 1
            if request.is_pending:
                by_risk[request.risk_level.value] += 1
        return {**counts, "total": len(self.requests), "pending_by_risk_level": by_risk}

    def forget(self, session_id: str) -> int:
        """
        Drop a session's resolved requests and their decisions from memory.
        Pending requests are kept; the repository keeps the audit trail.
        """
        dropped = {
            rid for rid, r in self.requests.items()
            if r.session_id == session_id and not r.is_pending
        }
        if not dropped:
            return 0
        for rid in dropped:
            del self.requests[rid]
        self.decisions = [d for d in self.decisions if d.request_id not in dropped]
        logger.debug("approval_requests_forgotten", session_id=session_id, count=len(dropped))
        return len(dropped)

    def override_stats(self) -> dict:
        """Approval and override rates over human approve/reject decisions."""
        final = [
            d for d in self.decisions
            if d.decision in (DecisionType.APPROVE, DecisionType.REJECT) and d.approver != SYSTEM_APPROVER
        ]
        if not final:
            return {"decisions": 0, "approval_rate": 0.0, "override_rate": 0.0}
        approved = sum(1 for d in final if d.decision == DecisionType.APPROVE)
        overridden = sum(1 for d in final if d.override)
        return {
            "decisions": len(final),
            "approval_rate": round(approved / len(final), 4),
            "override_rate": round(overridden / len(final), 4),
        }

    # ── Internals ────────────────────────────────────────────

    async def _record_decision(
        self,
        request: ApprovalRequest,
        approver: str,
        decision: DecisionType,
        reasoning: Optional[str],
        confidence_at_decision: Optional[float],
    ) -> ApprovalDecision:
        record = ApprovalDecision(
            request_id=request.request_id,
            approver=approver,
            decision=decision,
            reasoning=reasoning,
            confidence_at_decision=confidence_at_decision,
            system_recommendation=request.system_recommendation,
            override=(
                decision in (DecisionType.APPROVE, DecisionType.REJECT)
                and decision != request.system_recommendation
            ),
        )
        self.decisions.append(record)
        if self.repository is not None:
            await self.repository.append_decision(record)
        approval_decisions_total.labels(decision=decision.value).inc()

        logger.info(
            "approval_decision_recorded",
            request_id=request.request_id,
            session_id=request.session_id,
            approver=approver,
            decision=decision.value,
            override=record.override,
        )
        return record

    async def _resolve(self, request: ApprovalRequest, status: ApprovalStatus) -> None:
        request.status = status
        request.resolved_at = utcnow()
        await self._save(request)

    async def _escalate(self, request: ApprovalRequest) -> ApprovalRequest:
        if not request.escalation_path:
            raise EscalationExhaustedError(f"No escalation path left for request {request.request_id}")

        await self._resolve(request, ApprovalStatus.ESCALATED)
        escalated = ApprovalRequest(
            session_id=request.session_id,
            request_type=request.request_type,
            risk_level=request.risk_level,
            risk_score=request.risk_score,
            priority=max(1, request.priority - 1),
            assigned_to=[request.escalation_path[0]],
            escalation_path=request.escalation_path[1:],
            escalation_level=request.escalation_level + 1,
            deadline=utcnow() + self.timeout_for(request.risk_level, request.request_type),
            system_recommendation=request.system_recommendation,
            context={**request.context, "escalated_from": request.request_id},
        )
        await self._save(escalated)

        logger.info(
            "approval_escalated",
            session_id=request.session_id,
            from_request=request.request_id,
            to_request=escalated.request_id,
            assigned_to=escalated.assigned_to,
            escalation_level=escalated.escalation_level,
        )
        return escalated

    async def _save(self, request: ApprovalRequest) -> None:
        self.requests[request.request_id] = request
        if self.repository is not None:
            await self.repository.save_approval_request(request)
        approval_queue_depth.set(sum(1 for r in self.requests.values() if r.is_pending))
