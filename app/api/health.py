"""
Health check endpoint.
/health always returns 200 so platform healthchecks pass; the database is
only probed when the SQL repository is in use.
"""

from typing import Optional

from fastapi import APIRouter, Request
from sqlalchemy import text

from app.config import settings
from app.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _probe_db() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except Exception as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check(request: Request):
    """
    Health check: verifies API is running and, when persistence is enabled,
    tests DB connectivity. ALWAYS returns 200.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    response = {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "engine": "ready" if orchestrator is not None else "starting",
        "active_sessions": len(orchestrator.store) if orchestrator is not None else 0,
    }

    if settings.PERSIST_TO_DATABASE:
        db_ok, db_error = await _probe_db()
        response["database"] = "connected" if db_ok else "unreachable"
        if not db_ok:
            response["status"] = "degraded"
            response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness probe: ready once the orchestrator exists and, with
    persistence enabled, the database answers.
    """
    if getattr(request.app.state, "orchestrator", None) is None:
        return {"ready": False}
    if settings.PERSIST_TO_DATABASE:
        db_ok, _ = await _probe_db()
        return {"ready": db_ok}
    return {"ready": True}
