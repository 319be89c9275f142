"""
Workflow orchestrator: drives one import session through its state machine.

    initiated → analyzing → mapping → mapping_complete → generating_preview
      → preview_ready → (awaiting_approval | processing) → completed

failed, cancelled and timeout are reachable from every non-terminal state.
Every transition happens under the session's lock and emits a progress event.
"""

import asyncio
import traceback
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from app.config import settings
from app.engines.base import FieldClassifier
from app.errors import (
    ApprovalTimeoutError,
    BatchWriteFailure,
    ImportEngineError,
    InvalidTransitionError,
    SessionCancelledError,
)
from app.models.enums import (
    TERMINAL_STATUSES,
    ApprovalStatus,
    DecisionType,
    EventType,
    RecordOutcome,
    SessionStatus,
    Severity,
)
from app.observability.cost_tracker import CostTracker
from app.observability.logging import bind_session_context
from app.observability.metrics import (
    aggregate_confidence_scores,
    import_sessions_created_total,
    import_sessions_finished_total,
    workflow_transition_total,
)
from app.pipeline.batch_committer import BatchCommitter, InMemoryRecordWriter
from app.pipeline.confidence_scorer import ConfidenceResult, score_session
from app.pipeline.error_recovery import ErrorRecoveryService
from app.pipeline.events import EventChannel
from app.pipeline.field_extractor import FieldExtractor
from app.pipeline.mapping_cache import MappingCache
from app.pipeline.mapping_engine import MappingEngine
from app.pipeline.record_mapper import apply_mappings, coerce_record
from app.pipeline.target_schema import PRODUCT_TARGET_SCHEMA
from app.review.approval_router import ApprovalRouter, assess_risk, request_type_for
from app.schemas.imports import (
    ApprovalRequest,
    ExtractionResult,
    FileMeta,
    ImportConfig,
    ImportSession,
    MappingOptions,
    MappingResult,
    ProgressEvent,
    SessionProgress,
    TargetSchema,
    utcnow,
)
from app.storage.repository import ImportRepository
from app.storage.session_store import SessionState, SessionStore

logger = structlog.get_logger(__name__)

S = SessionStatus

ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    S.INITIATED: {S.ANALYZING},
    S.ANALYZING: {S.MAPPING},
    S.MAPPING: {S.MAPPING_COMPLETE},
    # A new resolve replaces the previous mapping set
    S.MAPPING_COMPLETE: {S.MAPPING, S.GENERATING_PREVIEW},
    S.GENERATING_PREVIEW: {S.PREVIEW_READY},
    S.PREVIEW_READY: {S.MAPPING, S.GENERATING_PREVIEW, S.AWAITING_APPROVAL, S.PROCESSING},
    S.AWAITING_APPROVAL: {S.PROCESSING},
    S.PROCESSING: {S.COMPLETED},
}
for _status in SessionStatus:
    if _status not in TERMINAL_STATUSES:
        ALLOWED_TRANSITIONS.setdefault(_status, set()).update(TERMINAL_STATUSES)

STEP_PERCENTAGE = {
    S.INITIATED: 0.0,
    S.ANALYZING: 10.0,
    S.MAPPING: 25.0,
    S.MAPPING_COMPLETE: 40.0,
    S.GENERATING_PREVIEW: 50.0,
    S.PREVIEW_READY: 60.0,
    S.AWAITING_APPROVAL: 65.0,
    S.PROCESSING: 70.0,
    S.COMPLETED: 100.0,
}

NEXT_ACTIONS = {
    S.INITIATED: ("upload_file", "user", "Upload the file to analyze"),
    S.ANALYZING: ("map_fields", "user", "Resolve field mappings against the target schema"),
    S.MAPPING: ("wait", "system", "Mapping in progress"),
    S.MAPPING_COMPLETE: ("generate_preview", "user", "Review mappings and generate a preview"),
    S.GENERATING_PREVIEW: ("wait", "system", "Preview in progress"),
    S.PREVIEW_READY: ("execute", "user", "Review the preview and start the import"),
    S.AWAITING_APPROVAL: ("await_approval", "approver", "An approver must accept or reject the import"),
    S.PROCESSING: ("wait", "system", "Records are being committed"),
    S.COMPLETED: ("view_results", "user", "Import finished"),
    S.FAILED: ("review_errors", "user", "Inspect the error log and retry with a new session"),
    S.CANCELLED: ("start_new_import", "user", "Session was cancelled"),
    S.TIMEOUT: ("start_new_import", "user", "Approval deadline passed without a decision"),
}


def next_action(status: SessionStatus) -> dict:
    """The next step for a session in `status`, and who has to take it."""
    action, actor, description = NEXT_ACTIONS[status]
    return {"action": action, "actor": actor, "description": description}


class WorkflowOrchestrator:
    """
    Owns every live session. Collaborators are injected; anything not given
    is built on top of the repository.
    """

    def __init__(
        self,
        repository: ImportRepository,
        extractor: Optional[FieldExtractor] = None,
        engine: Optional[MappingEngine] = None,
        recovery: Optional[ErrorRecoveryService] = None,
        router: Optional[ApprovalRouter] = None,
        committer: Optional[BatchCommitter] = None,
        store: Optional[SessionStore] = None,
        classifier: Optional[FieldClassifier] = None,
        scorer: Callable[..., ConfidenceResult] = score_session,
        timeout_fallback: Optional[str] = None,
    ):
        self.repository = repository
        self.extractor = extractor or FieldExtractor()
        self.cache = MappingCache(repository)
        self.engine = engine or MappingEngine(self.cache, classifier=classifier)
        self.recovery = recovery or ErrorRecoveryService(repository)
        self.router = router or ApprovalRouter(repository)
        self.committer = committer or BatchCommitter(InMemoryRecordWriter(), repository)
        self.store = store or SessionStore()
        self.scorer = scorer
        self.timeout_fallback = timeout_fallback or settings.APPROVAL_TIMEOUT_FALLBACK

    async def start(self) -> None:
        await self.recovery.load()

    async def shutdown(self) -> None:
        """Cancel timers and in-flight commits. Sessions are left as they are."""
        for state in self.store.all():
            for task in (state.timeout_task, state.execute_task):
                if task is not None and not task.done():
                    task.cancel()

    # ── Session lifecycle ────────────────────────────────────

    async def create_session(self, file_meta: FileMeta) -> str:
        session = ImportSession(
            owner=file_meta.owner,
            file_name=file_meta.file_name,
            file_type=file_meta.file_type,
            file_size_bytes=file_meta.file_size_bytes,
            entity_type=file_meta.entity_type,
            batch_size=file_meta.batch_size or settings.BATCH_SIZE,
            auto_advance_threshold=(
                file_meta.auto_advance_threshold
                if file_meta.auto_advance_threshold is not None
                else settings.AUTO_ADVANCE_THRESHOLD
            ),
        )
        state = SessionState(
            session=session,
            events=EventChannel(session.session_id),
            cost_tracker=CostTracker(session.session_id, settings.SESSION_COST_CEILING_USD, self.repository),
        )
        self.store.add(state)
        await self.repository.save_session(session)

        import_sessions_created_total.inc()
        state.events.publish(EventType.PROGRESS, S.INITIATED.value, 0.0, "Session created")
        logger.info(
            "session_created",
            session_id=session.session_id,
            file_name=session.file_name,
            owner=session.owner,
            threshold=session.auto_advance_threshold,
        )
        return session.session_id

    async def analyze(self, session_id: str, file_bytes: bytes) -> ExtractionResult:
        state = self.store.get(session_id)
        bind_session_context(session_id)
        async with state.lock:
            await self._transition(state, S.ANALYZING, "Analyzing file")
            try:
                parsed = self.extractor.parse(
                    file_bytes,
                    file_type=state.session.file_type,
                    file_name=state.session.file_name,
                )
                extraction = self.extractor.describe(parsed)
            except Exception as e:
                await self._handle_failure(state, e)
                raise

            state.records = parsed.records
            state.extraction = extraction
            state.session.headerless = extraction.headerless
            state.session.file_type = extraction.file_type
            state.session.file_size_bytes = state.session.file_size_bytes or len(file_bytes)
            state.session.progress = SessionProgress(total_records=extraction.total_records)
            for warning in parsed.warnings:
                self._log_error(state, "WARN_PARSE", warning, fatal=False)
            await self._save(state)

            state.events.publish(
                EventType.PROGRESS, "analysis_complete", STEP_PERCENTAGE[S.ANALYZING],
                f"Found {len(extraction.fields)} fields in {extraction.total_records} records",
                {"fields": len(extraction.fields), "confidence": extraction.confidence},
            )
            return extraction

    async def map_fields(
        self,
        session_id: str,
        target_schema: Optional[TargetSchema] = None,
        options: Optional[MappingOptions] = None,
    ) -> MappingResult:
        state = self.store.get(session_id)
        bind_session_context(session_id)
        async with state.lock:
            if state.extraction is None:
                raise InvalidTransitionError(session_id, state.session.status.value, S.MAPPING.value)
            await self._transition(state, S.MAPPING, "Resolving field mappings")

            schema = target_schema or PRODUCT_TARGET_SCHEMA
            try:
                result = await self.engine.resolve(
                    state.extraction.fields,
                    schema,
                    options=options,
                    session_id=session_id,
                    cost_tracker=state.cost_tracker,
                    is_cancelled=lambda: state.cancel_requested,
                )
            except SessionCancelledError:
                await self._transition(state, S.CANCELLED, "Cancelled during mapping")
                raise
            except Exception as e:
                await self._handle_failure(state, e)
                raise

            state.target_schema = schema
            state.mapping = result
            state.preview = None
            state.prepared_rows = []
            for ambiguity in result.metadata.ambiguities:
                self._log_error(state, "WARN_AMBIGUOUS_MAPPING", ambiguity["message"], fatal=False)

            await self._transition(
                state, S.MAPPING_COMPLETE,
                f"Mapped {result.metadata.mapped_fields} of {result.metadata.total_fields} fields",
                {"average_confidence": result.metadata.average_confidence},
            )
            return result

    async def preview(self, session_id: str, limit: int = 20) -> dict:
        state = self.store.get(session_id)
        bind_session_context(session_id)
        async with state.lock:
            if state.mapping is None:
                raise InvalidTransitionError(
                    session_id, state.session.status.value, S.GENERATING_PREVIEW.value
                )
            await self._transition(state, S.GENERATING_PREVIEW, "Validating mapped records")
            try:
                self._prepare(state, approved_fix_types=[])
            except Exception as e:
                await self._handle_failure(state, e)
                raise

            state.preview_limit = limit
            preview = self._build_preview(state, limit)
            await self._transition(
                state, S.PREVIEW_READY, "Preview ready",
                {"aggregate_confidence": state.session.aggregate_confidence},
            )
            return preview

    async def execute(self, session_id: str, import_config: Optional[ImportConfig] = None) -> dict:
        """
        Make the auto-advance decision and start the commit, or open an
        approval request. Returns as soon as the decision is made.
        """
        state = self.store.get(session_id)
        bind_session_context(session_id)
        config = import_config or ImportConfig()
        async with state.lock:
            if state.session.status != S.PREVIEW_READY:
                raise InvalidTransitionError(session_id, state.session.status.value, S.PROCESSING.value)

            state.import_config = config
            state.session.skip_errors = config.skip_errors
            if config.batch_size:
                state.session.batch_size = config.batch_size
            if config.approved_fix_types:
                self._prepare(state, approved_fix_types=config.approved_fix_types)
                self._build_preview(state, state.preview_limit)

            score = state.results["confidence"]
            threshold = state.session.auto_advance_threshold
            error_count = state.results["validation"]["errors"]
            aggregate_confidence_scores.observe(score.aggregate_confidence)

            if score.aggregate_confidence >= threshold and error_count == 0 and not score.hard_gate_failures:
                logger.info(
                    "auto_advance",
                    session_id=session_id,
                    aggregate_confidence=score.aggregate_confidence,
                    threshold=threshold,
                )
                await self.cache.record_outcome(state.mapping.mappings, success=True)
                await self._start_processing(state, "Auto-advanced")
                return {"accepted": True, "status": state.session.status.value, "approval_request_id": None}

            request = await self._request_approval(state, score)
            return {
                "accepted": True,
                "status": state.session.status.value,
                "approval_request_id": request.request_id,
            }

    async def resolve_approval(
        self,
        request_id: str,
        approver: str,
        decision: DecisionType,
        reasoning: Optional[str] = None,
        delegate_to: Optional[str] = None,
    ) -> dict:
        request = self.router.get(request_id)
        state = self.store.get(request.session_id)
        bind_session_context(state.session_id)
        async with state.lock:
            record, current = await self.router.decide(
                request_id,
                approver,
                decision,
                reasoning=reasoning,
                delegate_to=delegate_to,
                confidence_at_decision=state.session.aggregate_confidence,
            )

            if current.status == ApprovalStatus.APPROVED:
                self._cancel_timer(state)
                await self.cache.record_outcome(state.mapping.mappings, success=True)
                await self._start_processing(state, f"Approved by {approver}")
            elif current.status == ApprovalStatus.REJECTED:
                self._cancel_timer(state)
                await self.cache.record_outcome(state.mapping.mappings, success=False)
                self._log_error(
                    state, "ERR_APPROVAL_REJECTED",
                    f"Rejected by {approver}: {reasoning or 'no reason given'}", fatal=True,
                )
                await self._transition(state, S.CANCELLED, f"Rejected by {approver}")
            elif current.request_id != request_id:
                state.approval_request_id = current.request_id
                self._arm_timer(state, current)
                state.events.publish(
                    EventType.PROGRESS, "approval_escalated", STEP_PERCENTAGE[S.AWAITING_APPROVAL],
                    f"Escalated to {', '.join(current.assigned_to)}",
                    {"approval_request_id": current.request_id},
                )
            else:
                state.events.publish(
                    EventType.PROGRESS, "approval_delegated", STEP_PERCENTAGE[S.AWAITING_APPROVAL],
                    f"Delegated to {', '.join(current.assigned_to)}",
                    {"approval_request_id": current.request_id},
                )

            return {
                "decision": record,
                "request": current,
                "session_status": state.session.status.value,
            }

    async def get_status(self, session_id: str) -> dict:
        state = self.store.get(session_id)
        session = state.session
        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "progress": session.progress.model_dump(),
            "aggregate_confidence": session.aggregate_confidence,
            "approval_request_id": state.approval_request_id,
            "next_action": next_action(session.status),
            "results": {k: v for k, v in state.results.items() if k not in ("confidence",)},
            "cost": {k: v for k, v in state.cost_tracker.summary().items() if k != "events"},
            "error_log": list(session.error_log),
            "session": session,
        }

    async def cancel(self, session_id: str) -> ImportSession:
        """
        Cooperative cancel. Mapping stops between strategies and commit stops
        between chunks; an idle session is cancelled immediately.
        """
        state = self.store.get(session_id)
        bind_session_context(session_id)
        if state.is_terminal:
            return state.session
        state.cancel_requested = True
        logger.info("cancel_requested", session_id=session_id, status=state.session.status.value)

        # The commit task observes the flag and finishes the transition itself
        if state.session.status == S.PROCESSING:
            return state.session

        async with state.lock:
            if state.is_terminal or state.session.status == S.PROCESSING:
                return state.session
            if state.approval_request_id:
                self._cancel_timer(state)
                await self.router.withdraw(state.approval_request_id, "session cancelled")
            await self._transition(state, S.CANCELLED, "Cancelled by user")
        return state.session

    def subscribe(self, session_id: str, replay: bool = True) -> AsyncIterator[ProgressEvent]:
        return self.store.get(session_id).events.subscribe(replay=replay)

    def next_action(self, session_id: str) -> dict:
        return next_action(self.store.get(session_id).session.status)

    async def wait_until_settled(self, session_id: str, timeout: Optional[float] = None) -> ImportSession:
        """Wait for background commit and approval timers of a session to finish."""
        state = self.store.get(session_id)

        async def settle():
            while True:
                pending = [
                    t for t in (state.execute_task, state.timeout_task)
                    if t is not None and not t.done()
                ]
                if not pending:
                    return
                await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

        await asyncio.wait_for(settle(), timeout)
        return state.session

    def purge_expired(self) -> list[str]:
        """Tear down expired sessions along with their in-memory approval records."""
        expired = self.store.purge_expired()
        for session_id in expired:
            self.router.forget(session_id)
        return expired

    # ── Preview preparation ──────────────────────────────────

    def _prepare(self, state: SessionState, approved_fix_types: list) -> None:
        """Map, validate, fix and score every record of the session."""
        schema = state.target_schema
        mapped = apply_mappings(state.records, state.mapping.mappings)
        issues = self.recovery.validate(mapped, schema)
        fixes = self.recovery.analyze(issues)
        applied = self.recovery.select_applicable(fixes, approved_fix_types)
        fixed = self.recovery.apply_fixes(mapped, fixes, approved_fix_types)
        remaining = self.recovery.validate(fixed, schema)

        score = self.scorer(
            state.mapping,
            remaining,
            len(fixed),
            target_schema=schema,
            threshold=state.session.auto_advance_threshold,
        )

        state.prepared_rows = fixed
        state.applied_fixes = applied
        state.session.aggregate_confidence = score.aggregate_confidence
        state.results.update({
            "confidence": score,
            "issues": remaining,
            "fixes": fixes,
            "validation": {
                **self.recovery.summary(issues, fixes),
                "errors": sum(1 for i in remaining if i.severity == Severity.ERROR),
                "remaining_issues": len(remaining),
                "applied_fixes": len(applied),
            },
        })

    def _build_preview(self, state: SessionState, limit: int) -> dict:
        score: ConfidenceResult = state.results["confidence"]
        issues = state.results["issues"]
        rows = state.prepared_rows
        issues_by_row: dict[int, list] = {}
        for issue in issues:
            issues_by_row.setdefault(issue.row_index, []).append(issue)
        error_indices = sorted(
            i for i, row_issues in issues_by_row.items()
            if any(x.severity == Severity.ERROR for x in row_issues)
        )
        error_set = set(error_indices)

        valid_rows = [row for i, row in enumerate(rows) if i not in error_set][:limit]
        error_rows = [
            {
                "row_index": i,
                "row": rows[i],
                "issues": [x.model_dump(mode="json") for x in issues_by_row[i]],
            }
            for i in error_indices[:limit]
        ]
        preview = {
            "valid_rows": valid_rows,
            "error_rows": error_rows,
            "fixes": [f.model_dump(mode="json") for f in state.results["fixes"][:limit]],
            "statistics": {
                "total_records": len(rows),
                "valid_records": len(rows) - len(error_set),
                "error_records": len(error_set),
                "mapped_fields": state.mapping.metadata.mapped_fields,
                "unmapped_fields": state.mapping.metadata.unmapped_fields,
                "aggregate_confidence": score.aggregate_confidence,
                "validation_status": score.validation_status,
                "components": score.components,
                "hard_gate_failures": score.hard_gate_failures,
                "warnings": score.warnings,
                "validation": state.results["validation"],
            },
        }
        state.preview = preview
        return preview

    # ── Approval ─────────────────────────────────────────────

    async def _request_approval(self, state: SessionState, score: ConfidenceResult) -> ApprovalRequest:
        issues = state.results["issues"]
        assessment = assess_risk(
            aggregate_confidence=score.aggregate_confidence,
            threshold=state.session.auto_advance_threshold,
            mappings=state.mapping.mappings,
            issues=issues,
            total_records=len(state.prepared_rows),
            target_schema=state.target_schema,
            sample_rows=state.extraction.sample_rows if state.extraction else None,
        )
        request = await self.router.create_request(
            state.session_id,
            assessment,
            request_type=request_type_for(assessment, issues),
            context={
                "file_name": state.session.file_name,
                "aggregate_confidence": score.aggregate_confidence,
                "threshold": state.session.auto_advance_threshold,
                "validation": state.results["validation"],
                "mapping": state.mapping.metadata.model_dump(mode="json"),
            },
        )
        state.approval_request_id = request.request_id
        await self._transition(
            state, S.AWAITING_APPROVAL,
            f"Approval required ({request.risk_level.value} risk)",
            {"approval_request_id": request.request_id, "risk_score": request.risk_score},
        )
        self._arm_timer(state, request)
        return request

    def _arm_timer(self, state: SessionState, request: ApprovalRequest) -> None:
        self._cancel_timer(state)
        delay = max(0.0, (request.deadline - utcnow()).total_seconds())
        state.timeout_task = asyncio.create_task(
            self._approval_timer(state, request.request_id, delay)
        )

    @staticmethod
    def _cancel_timer(state: SessionState) -> None:
        task = state.timeout_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        state.timeout_task = None

    async def _approval_timer(self, state: SessionState, request_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        async with state.lock:
            if state.approval_request_id != request_id or state.session.status != S.AWAITING_APPROVAL:
                return
            current = await self.router.handle_timeout(request_id, self.timeout_fallback)
            if current.is_pending:
                state.approval_request_id = current.request_id
                self._arm_timer(state, current)
                state.events.publish(
                    EventType.PROGRESS, "approval_escalated", STEP_PERCENTAGE[S.AWAITING_APPROVAL],
                    f"Deadline passed, escalated to {', '.join(current.assigned_to)}",
                    {"approval_request_id": current.request_id},
                )
                return
            if current.status != ApprovalStatus.TIMEOUT:
                return

            error = ApprovalTimeoutError(f"No decision on {request_id} before {current.deadline.isoformat()}")
            self._log_error(state, error.error_code, error.message, fatal=True)
            await self._transition(state, S.TIMEOUT, "Approval deadline passed")

    # ── Commit ───────────────────────────────────────────────

    async def _start_processing(self, state: SessionState, message: str) -> None:
        await self._transition(state, S.PROCESSING, message)
        state.execute_task = asyncio.create_task(self._run_commit(state))

    async def _run_commit(self, state: SessionState) -> None:
        bind_session_context(state.session_id)
        session = state.session
        config = state.import_config or ImportConfig()
        rows = [coerce_record(row, state.target_schema) for row in state.prepared_rows]
        invalid_rows: dict[int, str] = {}
        for issue in state.results.get("issues", []):
            if issue.severity == Severity.ERROR and issue.row_index not in invalid_rows:
                invalid_rows[issue.row_index] = f"{issue.field}: {issue.message or issue.rule}"

        async def on_progress(progress: SessionProgress, batch) -> None:
            session.progress = progress
            session.updated_at = utcnow()
            pct = STEP_PERCENTAGE[S.PROCESSING] + 0.3 * progress.percentage
            state.events.publish(
                EventType.PROGRESS, "batch_committed", round(pct, 2),
                f"Batch {batch.batch_number}: {batch.status.value}",
                {
                    "batch_number": batch.batch_number,
                    "batch_status": batch.status.value,
                    "processed_records": progress.processed_records,
                    "records_per_second": progress.records_per_second,
                    "eta_seconds": progress.eta_seconds,
                },
            )

        try:
            result = await self.committer.commit(
                state.session_id,
                rows,
                batch_size=session.batch_size,
                skip_errors=config.skip_errors,
                is_cancelled=lambda: state.cancel_requested,
                on_progress=on_progress,
                invalid_rows=invalid_rows,
            )
        except Exception as e:
            async with state.lock:
                await self._handle_failure(state, e)
            return

        async with state.lock:
            state.results["commit"] = {
                "succeeded": result.succeeded,
                "failed": result.failed,
                "batches": len(result.batches),
                "failed_batches": [b.batch_number for b in result.failed_batches],
            }
            for fix in state.applied_fixes:
                outcome = result.outcomes.get(fix.row_index)
                if outcome is not None:
                    await self.recovery.record_outcome(fix.fix_type, outcome == RecordOutcome.SUCCEEDED)

            for batch in result.failed_batches:
                self._log_error(
                    state, BatchWriteFailure.error_code,
                    f"Batch {batch.batch_number} failed after {batch.attempts} attempt(s): {batch.error}",
                    fatal=False,
                )

            if result.cancelled:
                await self._transition(state, S.CANCELLED, "Cancelled during commit")
            elif result.all_failed:
                self._log_error(state, "ERR_ALL_BATCHES_FAILED", "Every batch failed", fatal=True)
                await self._transition(state, S.FAILED, "Every batch failed")
            else:
                await self._transition(
                    state, S.COMPLETED,
                    f"Imported {result.succeeded} of {len(rows)} records",
                    state.results["commit"],
                )

    # ── State machine ────────────────────────────────────────

    async def _transition(
        self,
        state: SessionState,
        to_status: SessionStatus,
        message: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        session = state.session
        from_status = session.status
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
            raise InvalidTransitionError(session.session_id, from_status.value, to_status.value)

        session.status = to_status
        session.updated_at = utcnow()
        workflow_transition_total.labels(to_status=to_status.value).inc()

        logger.info(
            "session_state_changed",
            session_id=session.session_id,
            from_status=from_status.value,
            to_status=to_status.value,
            message=message,
        )

        if to_status in TERMINAL_STATUSES:
            session.completed_at = session.updated_at
            state.terminal_at = session.updated_at
            self._cancel_timer(state)
            import_sessions_finished_total.labels(status=to_status.value).inc()

        if to_status == S.COMPLETED:
            event_type = EventType.COMPLETE
        elif to_status in TERMINAL_STATUSES:
            event_type = EventType.ERROR
        else:
            event_type = EventType.PROGRESS
        pct = 100.0 if to_status in TERMINAL_STATUSES else STEP_PERCENTAGE[to_status]
        state.events.publish(event_type, to_status.value, pct, message, data)

        await self._save(state)
        if to_status in TERMINAL_STATUSES:
            state.events.close()

    async def _handle_failure(self, state: SessionState, exc: Exception) -> None:
        """Record an error; fatal and unexpected errors fail the session."""
        if isinstance(exc, ImportEngineError):
            self._log_error(state, exc.error_code, exc.message, fatal=exc.fatal)
            if not exc.fatal:
                return
            logger.error("session_failed", session_id=state.session_id, error_code=exc.error_code, error=exc.message)
        else:
            error_msg = f"{type(exc).__name__}: {exc}"
            self._log_error(state, "ERR_INTERNAL", error_msg, fatal=True)
            logger.error(
                "session_failed",
                session_id=state.session_id,
                error=error_msg,
                traceback=traceback.format_exc(),
            )
        if not state.is_terminal:
            await self._transition(state, S.FAILED, "Failed")

    @staticmethod
    def _log_error(state: SessionState, error_code: str, message: str, fatal: bool) -> None:
        state.session.error_log.append({
            "error_code": error_code,
            "message": message,
            "fatal": fatal,
            "status": state.session.status.value,
            "timestamp": utcnow().isoformat(),
        })

    async def _save(self, state: SessionState) -> None:
        await self.repository.save_session(state.session)
