"""
/api/v1/sessions endpoints.
Session lifecycle: create, analyze upload, map, preview, execute, status,
cancel, and the server-sent event stream.
"""

import json
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import StreamingResponse

from app.config import settings
from app.dependencies import get_orchestrator, verify_api_key
from app.pipeline.orchestrator import WorkflowOrchestrator
from app.pipeline.target_schema import PRODUCT_TARGET_SCHEMA
from app.schemas.imports import FileMeta, ImportConfig, MappingOptions, TargetSchema
from app.schemas.sessions import (
    AnalyzeResponse,
    CancelResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    ExecuteRequest,
    ExecuteResponse,
    MapFieldsRequest,
    MapFieldsResponse,
    PreviewResponse,
    SessionStatusResponse,
    session_status_response,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=CreateSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Open an import session."""
    session_id = await orchestrator.create_session(FileMeta(**body.model_dump()))
    return CreateSessionResponse(session_id=session_id, status="initiated")


@router.post("/{session_id}/analyze", response_model=AnalyzeResponse)
async def analyze_upload(
    session_id: str,
    file: UploadFile = File(...),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Upload the file and infer its fields."""
    file_bytes = await file.read()

    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {len(file_bytes)} bytes. Max: {max_bytes} bytes",
        )

    extraction = await orchestrator.analyze(session_id, file_bytes)
    return AnalyzeResponse(
        session_id=session_id,
        fields=extraction.fields,
        sample_rows=extraction.sample_rows,
        total_records=extraction.total_records,
        headerless=extraction.headerless,
        confidence=extraction.confidence,
        corrupted_rows=extraction.corrupted_rows,
    )


@router.post("/{session_id}/mappings", response_model=MapFieldsResponse)
async def map_fields(
    session_id: str,
    body: MapFieldsRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Resolve source fields against the target schema."""
    if body.target_fields:
        schema = TargetSchema(fields=body.target_fields)
    elif body.target_field_names:
        schema = TargetSchema.from_names(body.target_field_names)
    else:
        schema = PRODUCT_TARGET_SCHEMA

    result = await orchestrator.map_fields(
        session_id,
        schema,
        MappingOptions(
            use_external=body.use_external,
            use_historical=body.use_historical,
            min_confidence=body.min_confidence,
        ),
    )
    return MapFieldsResponse(session_id=session_id, mappings=result.mappings, metadata=result.metadata)


@router.get("/{session_id}/preview", response_model=PreviewResponse)
async def preview(
    session_id: str,
    limit: int = Query(20, ge=1, le=500),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Validate mapped records and return a sample of valid and failing rows."""
    result = await orchestrator.preview(session_id, limit=limit)
    return PreviewResponse(session_id=session_id, **result)


@router.post("/{session_id}/execute", response_model=ExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
async def execute(
    session_id: str,
    body: Optional[ExecuteRequest] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Start the import, or route it for approval."""
    body = body or ExecuteRequest()
    outcome = await orchestrator.execute(session_id, ImportConfig(**body.model_dump()))
    return ExecuteResponse(session_id=session_id, **outcome)


@router.get("/{session_id}", response_model=SessionStatusResponse)
async def get_status(
    session_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    return session_status_response(await orchestrator.get_status(session_id))


@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel(
    session_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    session = await orchestrator.cancel(session_id)
    return CancelResponse(session_id=session_id, status=session.status.value)


@router.get("/{session_id}/events")
async def stream_events(
    session_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """Server-sent events; the stream closes when the session reaches a terminal state."""
    events = orchestrator.subscribe(session_id)

    async def event_source():
        async for event in events:
            payload = event.model_dump(mode="json")
            yield f"id: {event.sequence}\nevent: {event.type.value}\ndata: {json.dumps(payload)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
