"""
RQ job functions for unattended imports.
These are the entry points that the worker calls.
"""

from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from app.config import settings
from app.observability.logging import clear_session_context
from app.observability.metrics import worker_jobs_active

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the import job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_import(
    file_bytes: bytes,
    file_meta: dict,
    target_fields: Optional[list[str]] = None,
    import_config: Optional[dict] = None,
) -> str:
    """
    Enqueue a file for a full analyze → map → preview → execute run.
    Returns the job ID.
    """
    q = get_queue()
    job = q.enqueue(
        run_import_job,
        file_bytes,
        file_meta,
        target_fields,
        import_config or {},
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
        meta={"file_name": file_meta.get("file_name", "")},
    )
    logger.info("job_enqueued", file_name=file_meta.get("file_name"), job_id=job.id)
    return job.id


def run_import_job(
    file_bytes: bytes,
    file_meta: dict,
    target_fields: Optional[list[str]],
    import_config: dict,
) -> dict:
    """
    Main job function: run one import end to end.
    This runs inside the RQ worker process.
    """
    import asyncio

    logger.info("job_started", file_name=file_meta.get("file_name"))
    worker_jobs_active.inc()
    try:
        result = asyncio.run(_run_import_async(file_bytes, file_meta, target_fields, import_config))
        logger.info("job_completed", session_id=result["session_id"], status=result["status"])
        return result
    except Exception as e:
        logger.error("job_failed", file_name=file_meta.get("file_name"), error=str(e))
        raise
    finally:
        worker_jobs_active.dec()
        clear_session_context()


async def _run_import_async(
    file_bytes: bytes,
    file_meta: dict,
    target_fields: Optional[list[str]],
    import_config: dict,
) -> dict:
    """
    Drives a worker-local orchestrator through the whole workflow. A session
    that needs approval stops at awaiting_approval: its timer cannot outlive
    this process, so it is reported back rather than waited on.
    """
    from app.dependencies import build_orchestrator
    from app.models.enums import SessionStatus
    from app.schemas.imports import FileMeta, ImportConfig, TargetSchema

    orchestrator = build_orchestrator()
    await orchestrator.start()
    try:
        session_id = await orchestrator.create_session(FileMeta(**file_meta))
        await orchestrator.analyze(session_id, file_bytes)
        schema = TargetSchema.from_names(target_fields) if target_fields else None
        await orchestrator.map_fields(session_id, schema)
        await orchestrator.preview(session_id)
        outcome = await orchestrator.execute(session_id, ImportConfig(**import_config))

        if outcome["status"] == SessionStatus.PROCESSING.value:
            await orchestrator.wait_until_settled(session_id, timeout=settings.JOB_TIMEOUT_SECONDS)

        status = await orchestrator.get_status(session_id)
        return {
            "session_id": session_id,
            "status": status["status"],
            "aggregate_confidence": status["aggregate_confidence"],
            "approval_request_id": status["approval_request_id"],
            "progress": status["progress"],
            "commit": status["results"].get("commit"),
            "error_log": status["error_log"],
        }
    finally:
        await orchestrator.shutdown()
