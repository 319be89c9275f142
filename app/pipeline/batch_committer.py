"""
Chunked commit of mapped records.

Records are partitioned into fixed-size 1-based batches that run under a
semaphore. A chunk-level write failure is retried with exponential backoff;
row-level failures, whether reported by the writer or flagged up front by
validation, are skipped or fail the chunk depending on skip_errors. Sibling
chunks never see each other's failures.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import settings
from app.errors import BatchWriteFailure, RecordWriteError
from app.models.enums import BatchStatus, RecordOutcome
from app.observability.metrics import (
    batch_commit_duration_seconds,
    import_batches_total,
    records_committed_total,
)
from app.schemas.imports import HistoryEntry, ImportBatch, SessionProgress, utcnow
from app.storage.repository import ImportRepository

logger = structlog.get_logger(__name__)


def plan_batches(total: int, size: int) -> list[tuple[int, int, int]]:
    """
    Partition [0, total) into (batch_number, start, end) half-open ranges.
    Batch numbers are 1-based; the last batch may be short.
    """
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [
        (number, start, min(start + size, total))
        for number, start in enumerate(range(0, total, size), start=1)
    ]


# ── Writers ──────────────────────────────────────────────────

class RecordWriter(ABC):
    """Destination for committed records."""

    @abstractmethod
    async def write_batch(
        self,
        session_id: str,
        start_index: int,
        rows: list[tuple[int, dict[str, Any]]],
        skip_errors: bool,
    ) -> list[RecordWriteError]:
        """
        Persist one chunk of (record_index, record) pairs. start_index is the
        chunk's first index even when leading rows were held back.

        Returns the row failures that were skipped. Raises RecordWriteError on
        the first bad row when skip_errors is off (nothing from the chunk is
        kept), and BatchWriteFailure when the chunk as a whole could not be
        written.
        """
        ...


class InMemoryRecordWriter(RecordWriter):
    """
    Keeps committed records per session. Rows missing a required field are
    rejected; chunk failures can be scripted per start index for testing
    retry behavior.
    """

    def __init__(
        self,
        required_fields: Optional[list[str]] = None,
        fail_chunks: Optional[dict[int, int]] = None,
        delay_seconds: float = 0.0,
    ):
        self.required_fields = list(required_fields or [])
        self.fail_chunks = dict(fail_chunks or {})
        self.delay_seconds = delay_seconds
        self.committed: dict[str, dict[int, dict[str, Any]]] = {}
        self.calls = 0

    def _reject_reason(self, record: dict[str, Any]) -> Optional[str]:
        for name in self.required_fields:
            value = record.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                return f"missing required field '{name}'"
        return None

    async def write_batch(self, session_id, start_index, rows, skip_errors):
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        remaining = self.fail_chunks.get(start_index, 0)
        if remaining > 0:
            self.fail_chunks[start_index] = remaining - 1
            raise BatchWriteFailure(f"simulated write failure at offset {start_index}")

        staged = {}
        skipped = []
        for index, record in rows:
            reason = self._reject_reason(record)
            if reason is None:
                staged[index] = dict(record)
                continue
            error = RecordWriteError(reason, record_index=index)
            if not skip_errors:
                raise error
            skipped.append(error)

        self.committed.setdefault(session_id, {}).update(staged)
        return skipped


# ── Committer ────────────────────────────────────────────────

@dataclass
class CommitResult:
    batches: list[ImportBatch] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    # index -> outcome, for callers that learn from per-record results
    outcomes: dict[int, RecordOutcome] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return bool(self.batches) and all(b.status == BatchStatus.FAILED for b in self.batches)

    @property
    def failed_batches(self) -> list[ImportBatch]:
        return [b for b in self.batches if b.status == BatchStatus.FAILED]


ProgressCallback = Callable[[SessionProgress, ImportBatch], Awaitable[None]]


class BatchCommitter:

    def __init__(
        self,
        writer: RecordWriter,
        repository: Optional[ImportRepository] = None,
        max_concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        worker_id: str = "local",
    ):
        self.writer = writer
        self.repository = repository
        self.max_concurrency = max_concurrency or settings.MAX_CONCURRENCY
        self.max_retries = max_retries if max_retries is not None else settings.BATCH_MAX_RETRIES
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.BATCH_RETRY_BACKOFF_SECONDS
        )
        self.worker_id = worker_id

    async def commit(
        self,
        session_id: str,
        records: list[dict[str, Any]],
        batch_size: int,
        skip_errors: bool = False,
        is_cancelled: Callable[[], bool] = lambda: False,
        on_progress: Optional[ProgressCallback] = None,
        invalid_rows: Optional[dict[int, str]] = None,
    ) -> CommitResult:
        """
        Write records in chunks. invalid_rows maps record indexes that failed
        validation to a reason; they are never sent to the writer.
        """
        invalid_rows = invalid_rows or {}
        total = len(records)
        batches = [
            ImportBatch(session_id=session_id, batch_number=n, start_index=start, end_index=end)
            for n, start, end in plan_batches(total, batch_size)
        ]
        if self.repository is not None:
            for batch in batches:
                await self.repository.save_batch(batch)

        result = CommitResult(batches=batches)
        progress = SessionProgress(total_records=total)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        started = time.monotonic()

        logger.info(
            "batch_commit_started",
            session_id=session_id,
            total_records=total,
            batches=len(batches),
            batch_size=batch_size,
            skip_errors=skip_errors,
            invalid_records=len(invalid_rows),
        )

        async def run(batch: ImportBatch) -> None:
            async with semaphore:
                # Checked only before a chunk starts; a running chunk always finishes
                if is_cancelled():
                    result.cancelled = True
                    return
                await self._commit_batch(batch, records, skip_errors, result, invalid_rows)

            progress.processed_records = result.succeeded + result.failed
            progress.succeeded_records = result.succeeded
            progress.failed_records = result.failed
            progress.percentage = round(100.0 * progress.processed_records / total, 2) if total else 100.0
            elapsed = max(time.monotonic() - started, 1e-6)
            progress.records_per_second = round(progress.processed_records / elapsed, 2)
            remaining = total - progress.processed_records
            progress.eta_seconds = (
                round(remaining / progress.records_per_second, 2) if progress.records_per_second else None
            )
            if on_progress is not None:
                await on_progress(progress.model_copy(), batch)

        await asyncio.gather(*(run(b) for b in batches))

        logger.info(
            "batch_commit_finished",
            session_id=session_id,
            succeeded=result.succeeded,
            failed=result.failed,
            failed_batches=len(result.failed_batches),
            cancelled=result.cancelled,
        )
        return result

    async def _commit_batch(
        self,
        batch: ImportBatch,
        records: list[dict[str, Any]],
        skip_errors: bool,
        result: CommitResult,
        invalid_rows: dict[int, str],
    ) -> None:
        rejected = {
            i: invalid_rows[i] for i in range(batch.start_index, batch.end_index) if i in invalid_rows
        }
        chunk = [
            (i, records[i]) for i in range(batch.start_index, batch.end_index) if i not in rejected
        ]
        batch.status = BatchStatus.PROCESSING
        batch.worker_id = self.worker_id
        batch.started_at = utcnow()
        t0 = time.monotonic()

        skipped: list[RecordWriteError] = []
        error: Optional[str] = None
        if rejected and not skip_errors:
            first = min(rejected)
            error = f"record {first}: {rejected[first]}"
        while error is None:
            batch.attempts += 1
            try:
                skipped = await self.writer.write_batch(
                    batch.session_id, batch.start_index, chunk, skip_errors
                )
                break
            except RecordWriteError as e:
                error = f"record {e.record_index}: {e.message}"
                break
            except BatchWriteFailure as e:
                if batch.attempts > self.max_retries:
                    error = e.message
                    break
                delay = self.backoff_seconds * 2 ** (batch.attempts - 1)
                logger.warning(
                    "batch_write_retry",
                    session_id=batch.session_id,
                    batch_number=batch.batch_number,
                    attempt=batch.attempts,
                    delay_seconds=delay,
                    error=e.message,
                )
                await asyncio.sleep(delay)
            except Exception as e:
                # Unexpected errors are not retried
                logger.error(
                    "batch_write_error",
                    session_id=batch.session_id,
                    batch_number=batch.batch_number,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                error = f"{type(e).__name__}: {e}"
                break

        history = []
        if error is None:
            skipped_indices = dict(rejected)
            skipped_indices.update({e.record_index: e.message for e in skipped})
            batch.status = BatchStatus.COMPLETED
            batch.failed = len(skipped_indices)
            batch.succeeded = batch.record_count - batch.failed
            for index in range(batch.start_index, batch.end_index):
                outcome = RecordOutcome.SKIPPED if index in skipped_indices else RecordOutcome.SUCCEEDED
                result.outcomes[index] = outcome
                history.append(HistoryEntry(
                    session_id=batch.session_id,
                    record_index=index,
                    batch_number=batch.batch_number,
                    status=outcome.value,
                    error=skipped_indices.get(index),
                ))
        else:
            batch.status = BatchStatus.FAILED
            batch.error = error
            batch.failed = batch.record_count
            for index in range(batch.start_index, batch.end_index):
                result.outcomes[index] = RecordOutcome.FAILED
                history.append(HistoryEntry(
                    session_id=batch.session_id,
                    record_index=index,
                    batch_number=batch.batch_number,
                    status=RecordOutcome.FAILED.value,
                    error=error,
                ))
            logger.error(
                "batch_failed",
                session_id=batch.session_id,
                batch_number=batch.batch_number,
                attempts=batch.attempts,
                error=error,
            )

        batch.completed_at = utcnow()
        result.succeeded += batch.succeeded
        result.failed += batch.failed

        batch_commit_duration_seconds.observe(time.monotonic() - t0)
        import_batches_total.labels(status=batch.status.value).inc()
        if batch.succeeded:
            records_committed_total.labels(outcome=RecordOutcome.SUCCEEDED.value).inc(batch.succeeded)
        if batch.failed:
            outcome = RecordOutcome.FAILED if error else RecordOutcome.SKIPPED
            records_committed_total.labels(outcome=outcome.value).inc(batch.failed)

        if self.repository is not None:
            await self.repository.save_batch(batch)
            await self.repository.add_history(history)
