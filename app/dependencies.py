"""
FastAPI dependency injection.
Provides the workflow orchestrator, DB sessions, and API key validation.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.engines.base import FieldClassifier
from app.models.database import get_session
from app.pipeline.orchestrator import WorkflowOrchestrator
from app.storage.repository import ImportRepository, InMemoryRepository


def build_repository() -> ImportRepository:
    """Postgres-backed repository when enabled, in-process otherwise."""
    if settings.PERSIST_TO_DATABASE:
        from app.storage.sql_repository import SqlImportRepository
        return SqlImportRepository()
    return InMemoryRepository()


def build_classifier() -> Optional[FieldClassifier]:
    if not settings.CLASSIFIER_ENABLED or not settings.CLASSIFIER_URL:
        return None
    from app.engines.http_classifier import HttpFieldClassifier
    return HttpFieldClassifier()


def build_orchestrator() -> WorkflowOrchestrator:
    return WorkflowOrchestrator(build_repository(), classifier=build_classifier())


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    """The app-level orchestrator created in the lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Import engine is not ready",
        )
    return orchestrator


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
