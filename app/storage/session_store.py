"""
Process-local registry of live import sessions.

Each SessionState bundles the ImportSession with everything the workflow
holds between steps: its transition lock, cancel flag, parsed records,
mapping set, preview, event channel and timer tasks.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from app.config import settings
from app.errors import SessionNotFoundError
from app.models.enums import TERMINAL_STATUSES
from app.observability.cost_tracker import CostTracker
from app.pipeline.events import EventChannel
from app.schemas.imports import (
    AutoFix,
    ExtractionResult,
    ImportConfig,
    ImportSession,
    MappingResult,
    TargetSchema,
    utcnow,
)

logger = structlog.get_logger(__name__)


@dataclass
class SessionState:
    session: ImportSession
    events: EventChannel
    cost_tracker: CostTracker
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_requested: bool = False

    records: list[dict[str, Any]] = field(default_factory=list)
    extraction: Optional[ExtractionResult] = None
    target_schema: Optional[TargetSchema] = None
    mapping: Optional[MappingResult] = None
    preview: Optional[dict[str, Any]] = None
    preview_limit: int = 20
    prepared_rows: list[dict[str, Any]] = field(default_factory=list)
    applied_fixes: list[AutoFix] = field(default_factory=list)
    import_config: Optional[ImportConfig] = None
    results: dict[str, Any] = field(default_factory=dict)

    approval_request_id: Optional[str] = None
    timeout_task: Optional[asyncio.Task] = None
    execute_task: Optional[asyncio.Task] = None
    terminal_at: Optional[datetime] = None

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def is_terminal(self) -> bool:
        return self.session.status in TERMINAL_STATUSES


class SessionStore:

    def __init__(self, retention_minutes: Optional[int] = None):
        self.retention_minutes = (
            retention_minutes if retention_minutes is not None else settings.SESSION_RETENTION_MINUTES
        )
        self._states: dict[str, SessionState] = {}

    def add(self, state: SessionState) -> SessionState:
        self._states[state.session_id] = state
        return state

    def get(self, session_id: str) -> SessionState:
        state = self._states.get(session_id)
        if state is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return state

    def find(self, session_id: str) -> Optional[SessionState]:
        return self._states.get(session_id)

    def all(self) -> list[SessionState]:
        return list(self._states.values())

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._states

    def purge_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Drop sessions that have been terminal for longer than the retention window."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.retention_minutes)
        expired = [
            sid for sid, state in self._states.items()
            if state.is_terminal and state.terminal_at is not None and state.terminal_at <= cutoff
        ]
        for sid in expired:
            state = self._states.pop(sid)
            for task in (state.timeout_task, state.execute_task):
                if task is not None and not task.done():
                    task.cancel()
            state.events.close()

        if expired:
            logger.info("sessions_purged", count=len(expired), remaining=len(self._states))
        return expired
