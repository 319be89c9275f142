"""
/api/v1/jobs endpoints.
Unattended imports on the worker queue, queue statistics and job status.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from redis import Redis

from app.config import settings
from app.dependencies import verify_api_key
from app.schemas.imports import FileMeta, ImportConfig
from app.schemas.jobs import EnqueueImportResponse, JobStatus, QueueStats

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(verify_api_key)])


def _get_redis() -> Redis:
    """Get a Redis connection."""
    return Redis.from_url(settings.REDIS_URL)


@router.post("", response_model=EnqueueImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue(
    file: UploadFile = File(...),
    owner: Optional[str] = Form(None),
    target_fields: Optional[str] = Form(None, description="Comma-separated target field names"),
    skip_errors: bool = Form(False),
    batch_size: Optional[int] = Form(None),
):
    """Queue a file for a full import run on the worker."""
    from app.worker.jobs import enqueue_import

    file_bytes = await file.read()
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {len(file_bytes)} bytes. Max: {max_bytes} bytes",
        )
    if not file_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file uploaded")

    file_name = file.filename or "upload.csv"
    meta = FileMeta(file_name=file_name, owner=owner, file_size_bytes=len(file_bytes), batch_size=batch_size)
    config = ImportConfig(skip_errors=skip_errors, batch_size=batch_size)
    names = [n.strip() for n in target_fields.split(",") if n.strip()] if target_fields else None

    try:
        job_id = enqueue_import(
            file_bytes,
            meta.model_dump(mode="json"),
            names,
            json.loads(config.model_dump_json()),
        )
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {str(e)}")
    return EnqueueImportResponse(job_id=job_id, file_name=file_name)


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats():
    """Get current queue statistics."""
    try:
        from rq import Queue
        from rq.worker import Worker

        conn = _get_redis()
        q = Queue(settings.QUEUE_NAME, connection=conn)
        workers = Worker.all(connection=conn)

        return QueueStats(
            queue_name=settings.QUEUE_NAME,
            queued=len(q),
            started=q.started_job_registry.count,
            finished=q.finished_job_registry.count,
            failed=q.failed_job_registry.count,
            deferred=q.deferred_job_registry.count,
            workers=len(workers),
        )
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {str(e)}")


@router.get("/{job_id}", response_model=JobStatus)
async def get_job_status(job_id: str):
    """Get the status of a specific import job."""
    try:
        from rq.job import Job

        conn = _get_redis()
        job = Job.fetch(job_id, connection=conn)

        return JobStatus(
            job_id=job_id,
            file_name=job.meta.get("file_name", ""),
            status=job.get_status(),
            enqueued_at=job.enqueued_at,
            started_at=job.started_at,
            ended_at=job.ended_at,
            error_message=str(job.exc_info) if job.exc_info else None,
            result=job.result if job.is_finished else None,
        )
    except Exception as e:
        raise HTTPException(status_code=404, detail=f"Job not found: {str(e)}")
