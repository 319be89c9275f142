"""
Tests for chunked record commit.
"""

import pytest

from app.models.enums import BatchStatus, RecordOutcome
from app.pipeline.batch_committer import BatchCommitter, InMemoryRecordWriter, plan_batches


def records(n, missing_name_at=()):
    return [
        {"name": None if i in missing_name_at else f"item {i}", "sku": f"SKU-{i:04d}"}
        for i in range(n)
    ]


class BrokenConnectionWriter(InMemoryRecordWriter):
    """Raises a driver-style error for the chunk starting at broken_at."""

    def __init__(self, broken_at: int):
        super().__init__()
        self.broken_at = broken_at

    async def write_batch(self, session_id, start_index, rows, skip_errors):
        if start_index == self.broken_at:
            self.calls += 1
            raise RuntimeError("connection reset by peer")
        return await super().write_batch(session_id, start_index, rows, skip_errors)


class TestPlanBatches:

    def test_even_partition(self):
        plan = plan_batches(100, 10)
        assert len(plan) == 10
        assert plan[0] == (1, 0, 10)
        assert plan[-1] == (10, 90, 100)

    def test_short_last_batch(self):
        assert plan_batches(25, 10) == [(1, 0, 10), (2, 10, 20), (3, 20, 25)]

    def test_ranges_cover_every_index_once(self):
        covered = [i for _, start, end in plan_batches(1003, 100) for i in range(start, end)]
        assert covered == list(range(1003))

    def test_empty_input(self):
        assert plan_batches(0, 10) == []

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError):
            plan_batches(10, 0)


class TestCommit:

    async def test_all_records_committed(self, repository):
        writer = InMemoryRecordWriter()
        committer = BatchCommitter(writer, repository, max_concurrency=3)
        result = await committer.commit("s1", records(100), batch_size=10)

        assert result.succeeded == 100
        assert result.failed == 0
        assert len(result.batches) == 10
        assert all(b.status == BatchStatus.COMPLETED for b in result.batches)
        assert sorted(writer.committed["s1"]) == list(range(100))
        assert len(repository.history) == 100
        assert [b.batch_number for b in repository.batches_for("s1")] == list(range(1, 11))

    async def test_progress_reported_per_batch(self):
        seen = []

        async def on_progress(progress, batch):
            seen.append((batch.batch_number, progress.processed_records))

        committer = BatchCommitter(InMemoryRecordWriter(), max_concurrency=1)
        await committer.commit("s1", records(30), batch_size=10, on_progress=on_progress)
        assert [n for n, _ in seen] == [1, 2, 3]
        assert seen[-1][1] == 30

    async def test_transient_failure_is_retried(self, repository):
        writer = InMemoryRecordWriter(fail_chunks={10: 2})
        committer = BatchCommitter(writer, repository, max_retries=3, backoff_seconds=0.0)
        result = await committer.commit("s1", records(30), batch_size=10)

        assert result.succeeded == 30
        second = result.batches[1]
        assert second.status == BatchStatus.COMPLETED
        assert second.attempts == 3

    async def test_exhausted_retries_fail_only_that_batch(self, repository):
        writer = InMemoryRecordWriter(fail_chunks={10: 10})
        committer = BatchCommitter(writer, repository, max_retries=2, backoff_seconds=0.0)
        result = await committer.commit("s1", records(30), batch_size=10)

        assert [b.batch_number for b in result.failed_batches] == [2]
        assert result.failed_batches[0].attempts == 3
        assert result.succeeded == 20
        assert result.failed == 10
        assert not result.all_failed
        assert result.outcomes[15] == RecordOutcome.FAILED
        assert result.outcomes[25] == RecordOutcome.SUCCEEDED
        assert 15 not in writer.committed["s1"]

    async def test_bad_record_fails_chunk_without_skip_errors(self):
        writer = InMemoryRecordWriter(required_fields=["name"])
        committer = BatchCommitter(writer, backoff_seconds=0.0)
        result = await committer.commit("s1", records(20, missing_name_at={3}), batch_size=10)

        assert result.batches[0].status == BatchStatus.FAILED
        assert result.batches[0].attempts == 1
        assert result.batches[1].status == BatchStatus.COMPLETED
        assert result.succeeded == 10
        assert 0 not in writer.committed["s1"]

    async def test_skip_errors_keeps_good_rows(self, repository):
        writer = InMemoryRecordWriter(required_fields=["name"])
        committer = BatchCommitter(writer, repository)
        result = await committer.commit("s1", records(20, missing_name_at={3, 12}), batch_size=10, skip_errors=True)

        assert result.succeeded == 18
        assert result.failed == 2
        assert result.outcomes[3] == RecordOutcome.SKIPPED
        assert 3 not in writer.committed["s1"]
        assert 4 in writer.committed["s1"]
        skipped = [h for h in repository.history if h.status == "skipped"]
        assert sorted(h.record_index for h in skipped) == [3, 12]

    async def test_every_batch_failing(self):
        writer = InMemoryRecordWriter(fail_chunks={0: 5, 10: 5})
        committer = BatchCommitter(writer, max_retries=1, backoff_seconds=0.0)
        result = await committer.commit("s1", records(20), batch_size=10)
        assert result.all_failed

    async def test_cancel_stops_before_next_chunk(self):
        writer = InMemoryRecordWriter()
        committer = BatchCommitter(writer, max_concurrency=1)
        calls = {"n": 0}

        def is_cancelled():
            calls["n"] += 1
            return calls["n"] > 2

        result = await committer.commit("s1", records(50), batch_size=10, is_cancelled=is_cancelled)
        assert result.cancelled
        assert result.succeeded == 20
        assert writer.calls == 2

    async def test_unexpected_writer_error_fails_only_that_batch(self, repository):
        writer = BrokenConnectionWriter(broken_at=10)
        committer = BatchCommitter(writer, repository, backoff_seconds=0.0)
        result = await committer.commit("s1", records(30), batch_size=10)

        assert [b.batch_number for b in result.failed_batches] == [2]
        assert result.failed_batches[0].attempts == 1
        assert "RuntimeError" in result.failed_batches[0].error
        assert result.succeeded == 20
        assert result.outcomes[25] == RecordOutcome.SUCCEEDED
        saved = repository.batches_for("s1")
        assert [b.status for b in saved] == [BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.COMPLETED]


class TestInvalidRows:

    async def test_invalid_row_fails_its_chunk(self):
        writer = InMemoryRecordWriter()
        committer = BatchCommitter(writer, backoff_seconds=0.0)
        result = await committer.commit(
            "s1", records(20), batch_size=10, invalid_rows={3: "price: 'abc' is not a number"}
        )

        assert result.batches[0].status == BatchStatus.FAILED
        assert "record 3" in result.batches[0].error
        assert result.batches[1].status == BatchStatus.COMPLETED
        assert result.succeeded == 10
        assert result.failed == 10
        assert writer.calls == 1
        assert sorted(writer.committed["s1"]) == list(range(10, 20))

    async def test_skip_errors_holds_back_invalid_rows(self, repository):
        writer = InMemoryRecordWriter()
        committer = BatchCommitter(writer, repository)
        result = await committer.commit(
            "s1", records(20), batch_size=10, skip_errors=True, invalid_rows={3: "price: 'abc' is not a number"}
        )

        assert result.succeeded == 19
        assert result.failed == 1
        assert result.outcomes[3] == RecordOutcome.SKIPPED
        assert 3 not in writer.committed["s1"]
        assert 4 in writer.committed["s1"]
        skipped = [h for h in repository.history if h.status == "skipped"]
        assert [(h.record_index, h.error) for h in skipped] == [(3, "price: 'abc' is not a number")]
