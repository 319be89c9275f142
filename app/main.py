"""
FastAPI application factory.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.router import api_router
from app.config import settings
from app.dependencies import build_orchestrator
from app.errors import (
    AlreadyResolvedError,
    ApprovalNotFoundError,
    EmptyInputError,
    EscalationExhaustedError,
    ImportEngineError,
    InvalidTransitionError,
    ParseError,
    SessionCancelledError,
    SessionNotFoundError,
    UnauthorizedApproverError,
)
from app.models.database import close_db
from app.observability.logging import setup_logging

logger = structlog.get_logger(__name__)

PURGE_INTERVAL_SECONDS = 60

# Most specific first
ERROR_STATUS_CODES: list[tuple[type[ImportEngineError], int]] = [
    (SessionNotFoundError, status.HTTP_404_NOT_FOUND),
    (ApprovalNotFoundError, status.HTTP_404_NOT_FOUND),
    (UnauthorizedApproverError, status.HTTP_403_FORBIDDEN),
    (AlreadyResolvedError, status.HTTP_409_CONFLICT),
    (EscalationExhaustedError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (SessionCancelledError, status.HTTP_409_CONFLICT),
    (ParseError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (EmptyInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def status_code_for(exc: ImportEngineError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def _purge_loop(app: FastAPI) -> None:
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        app.state.orchestrator.purge_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    # Tests install their own orchestrator before startup
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator()
    await app.state.orchestrator.start()
    purge_task = asyncio.create_task(_purge_loop(app))

    logger.info(
        "app_started",
        version=settings.APP_VERSION,
        persistence="postgres" if settings.PERSIST_TO_DATABASE else "memory",
        classifier_enabled=settings.CLASSIFIER_ENABLED,
    )

    yield

    # Shutdown
    purge_task.cancel()
    await app.state.orchestrator.shutdown()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Catalog Import Engine",
        description="Field mapping and approval workflow for bulk product catalog imports.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    @app.exception_handler(ImportEngineError)
    async def import_engine_error_handler(request: Request, exc: ImportEngineError):
        code = status_code_for(exc)
        logger.info("request_rejected", path=request.url.path, status_code=code, error_code=exc.error_code)
        return JSONResponse(
            status_code=code,
            content={"error_code": exc.error_code, "detail": exc.message},
        )

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
