"""
/api/v1/approvals endpoints.
Pending approval queue and approver decisions.
"""

import structlog
from fastapi import APIRouter, Depends, Query

from app.dependencies import get_orchestrator, verify_api_key
from app.pipeline.orchestrator import WorkflowOrchestrator
from app.schemas.imports import ApprovalRequest
from app.schemas.sessions import ApprovalQueueResponse, DecisionRequest, DecisionResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/approvals", tags=["approvals"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=ApprovalQueueResponse)
async def list_pending(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Pending requests ordered by priority, plus queue and calibration statistics."""
    router_ = orchestrator.router
    return ApprovalQueueResponse(
        pending=router_.pending_requests(limit=limit, offset=offset),
        stats=router_.queue_stats(),
        calibration=router_.override_stats(),
    )


@router.get("/{request_id}", response_model=ApprovalRequest)
async def get_request(
    request_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.router.get(request_id)


@router.post("/{request_id}/decision", response_model=DecisionResponse)
async def decide(
    request_id: str,
    body: DecisionRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Approve, reject, escalate or delegate a pending request."""
    outcome = await orchestrator.resolve_approval(
        request_id,
        approver=body.approver,
        decision=body.decision,
        reasoning=body.reasoning,
        delegate_to=body.delegate_to,
    )
    return DecisionResponse(**outcome)
