"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from app.api.approvals import router as approvals_router
from app.api.health import router as health_router
from app.api.jobs import router as jobs_router
from app.api.sessions import router as sessions_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(sessions_router)
api_router.include_router(approvals_router)
api_router.include_router(jobs_router)
