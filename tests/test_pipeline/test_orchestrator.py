"""
Tests for the workflow orchestrator: end-to-end session lifecycles.
"""

import pytest

from app.errors import (
    AlreadyResolvedError,
    EmptyInputError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from app.models.enums import ApprovalStatus, DecisionType, EventType, FixType, SessionStatus
from app.pipeline.batch_committer import BatchCommitter, InMemoryRecordWriter
from app.pipeline.orchestrator import ALLOWED_TRANSITIONS, next_action
from app.schemas.imports import FileMeta, ImportConfig
from app.storage.session_store import SessionStore

SETTLE_TIMEOUT = 5.0


async def prepared_session(orchestrator, content, schema, **meta):
    """Create, analyze, map and preview a session."""
    session_id = await orchestrator.create_session(FileMeta(file_name="products.csv", **meta))
    await orchestrator.analyze(session_id, content)
    await orchestrator.map_fields(session_id, schema)
    await orchestrator.preview(session_id)
    return session_id


async def collect_events(orchestrator, session_id):
    return [event async for event in orchestrator.subscribe(session_id)]


class TestAutoAdvance:

    async def test_confident_import_commits_without_approval(
        self, make_orchestrator, writer, repository, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)

        outcome = await orchestrator.execute(session_id)
        assert outcome["accepted"]
        assert outcome["status"] == "processing"
        assert outcome["approval_request_id"] is None

        session = await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)
        assert session.status == SessionStatus.COMPLETED
        assert session.progress.succeeded_records == 3
        assert orchestrator.router.requests == {}

        committed = writer.committed[session_id]
        assert committed[0] == {"name": "Blue Mug", "price": 19.99, "sku": "ABC-001"}

    async def test_confirmed_mappings_are_learned(
        self, make_orchestrator, repository, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        await orchestrator.execute(session_id)
        await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)

        entries = await repository.get_cache_entries("prodname")
        assert [e.target_field for e in entries] == ["name"]

    async def test_repository_tracks_session(
        self, make_orchestrator, repository, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        await orchestrator.execute(session_id)
        await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)

        assert repository.sessions[session_id].status == SessionStatus.COMPLETED
        assert len(repository.batches_for(session_id)) == 1
        assert len([h for h in repository.history if h.session_id == session_id]) == 3


class TestApprovalFlow:

    async def test_low_confidence_waits_for_approval_then_commits(
        self, make_orchestrator, fixed_score, writer, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(scorer=fixed_score(0.55))
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)

        outcome = await orchestrator.execute(session_id)
        assert outcome["status"] == "awaiting_approval"
        request_id = outcome["approval_request_id"]
        assert request_id is not None
        assert orchestrator.next_action(session_id)["action"] == "await_approval"

        request = orchestrator.router.get(request_id)
        result = await orchestrator.resolve_approval(request_id, request.assigned_to[0], DecisionType.APPROVE)
        assert result["session_status"] == "processing"
        assert result["decision"].confidence_at_decision == 0.55

        session = await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)
        assert session.status == SessionStatus.COMPLETED
        assert len(writer.committed[session_id]) == 3

    async def test_rejection_cancels_session(
        self, make_orchestrator, fixed_score, repository, writer, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(scorer=fixed_score(0.55))
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        outcome = await orchestrator.execute(session_id)
        request = orchestrator.router.get(outcome["approval_request_id"])

        result = await orchestrator.resolve_approval(
            request.request_id, request.assigned_to[0], DecisionType.REJECT, reasoning="wrong supplier file"
        )
        assert result["session_status"] == "cancelled"
        status = await orchestrator.get_status(session_id)
        assert status["error_log"][-1]["error_code"] == "ERR_APPROVAL_REJECTED"
        assert session_id not in writer.committed
        assert await repository.get_cache_entries("prodname") == []

    async def test_escalation_keeps_session_waiting(
        self, make_orchestrator, fixed_score, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(scorer=fixed_score(0.55))
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        outcome = await orchestrator.execute(session_id)
        request = orchestrator.router.get(outcome["approval_request_id"])

        result = await orchestrator.resolve_approval(request.request_id, request.assigned_to[0], DecisionType.ESCALATE)
        assert result["session_status"] == "awaiting_approval"
        status = await orchestrator.get_status(session_id)
        assert status["approval_request_id"] == result["request"].request_id
        assert status["approval_request_id"] != request.request_id
        await orchestrator.shutdown()

    async def test_validation_errors_force_approval(
        self, make_orchestrator, scenario_schema
    ):
        content = (
            b"prod_name,amt,sku\n"
            b"Blue Mug,abc,ABC-001\n"
            b"Red Mug,5.00,ABC-002\n"
            b"Green Mug,12.50,ABC-003\n"
            b"Grey Mug,7.25,ABC-004\n"
            b"Pink Mug,8.75,ABC-005\n"
        )
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, content, scenario_schema)
        outcome = await orchestrator.execute(session_id)
        assert outcome["status"] == "awaiting_approval"
        await orchestrator.shutdown()


ONE_BAD_PRICE_CSV = (
    b"prod_name,amt,sku\n"
    b"Blue Mug,abc,ABC-001\n"
    b"Red Mug,5.00,ABC-002\n"
    b"Green Mug,12.50,ABC-003\n"
    b"Grey Mug,7.25,ABC-004\n"
    b"Pink Mug,8.75,ABC-005\n"
)


class TestApprovedErrorRows:

    async def approve(self, orchestrator, session_id, config):
        outcome = await orchestrator.execute(session_id, config)
        assert outcome["status"] == "awaiting_approval"
        request = orchestrator.router.get(outcome["approval_request_id"])
        await orchestrator.resolve_approval(request.request_id, request.assigned_to[0], DecisionType.APPROVE)
        return await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)

    async def test_error_row_fails_its_chunk(self, make_orchestrator, writer, scenario_schema):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, ONE_BAD_PRICE_CSV, scenario_schema)
        assert orchestrator.store.get(session_id).preview["statistics"]["error_records"] == 1

        session = await self.approve(orchestrator, session_id, ImportConfig(skip_errors=False, batch_size=2))
        assert session.status == SessionStatus.COMPLETED
        assert session.progress.succeeded_records == 3
        assert session.progress.failed_records == 2
        assert sorted(writer.committed[session_id]) == [2, 3, 4]
        assert any(e["error_code"] == "ERR_BATCH_WRITE" for e in session.error_log)

    async def test_skip_errors_skips_only_the_error_row(
        self, make_orchestrator, writer, repository, scenario_schema
    ):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, ONE_BAD_PRICE_CSV, scenario_schema)

        session = await self.approve(orchestrator, session_id, ImportConfig(skip_errors=True, batch_size=2))
        assert session.status == SessionStatus.COMPLETED
        assert session.progress.succeeded_records == 4
        assert session.progress.failed_records == 1
        assert sorted(writer.committed[session_id]) == [1, 2, 3, 4]

        skipped = [h for h in repository.history if h.session_id == session_id and h.status == "skipped"]
        assert [h.record_index for h in skipped] == [0]
        assert "price" in skipped[0].error


class TestApprovalTimeout:

    async def test_deadline_times_out_session(
        self, make_orchestrator, fixed_score, fast_routing, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(
            scorer=fixed_score(0.55), routing=fast_routing, timeout_fallback="reject"
        )
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        outcome = await orchestrator.execute(session_id)

        session = await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)
        assert session.status == SessionStatus.TIMEOUT
        assert orchestrator.router.get(outcome["approval_request_id"]).status == ApprovalStatus.TIMEOUT
        assert session.error_log[-1]["error_code"] == "ERR_APPROVAL_TIMEOUT"

    async def test_escalate_fallback_escalates_before_timing_out(
        self, make_orchestrator, fixed_score, fast_routing, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(
            scorer=fixed_score(0.55), routing=fast_routing, timeout_fallback="escalate"
        )
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        outcome = await orchestrator.execute(session_id)

        session = await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)
        assert session.status == SessionStatus.TIMEOUT
        first = orchestrator.router.get(outcome["approval_request_id"])
        assert first.status == ApprovalStatus.ESCALATED
        assert len(orchestrator.router.requests) == 2


class TestFixes:

    async def test_approved_fix_type_clears_errors_and_learns(
        self, make_orchestrator, repository, writer, scenario_schema
    ):
        content = b"prod_name,amt,sku\nBlue Mug,-19.99,ABC-001\nRed Mug,5.00,ABC-002\nGreen Mug,12.50,ABC-003\n"
        orchestrator = make_orchestrator()
        session_id = await orchestrator.create_session(FileMeta(file_name="products.csv"))
        await orchestrator.analyze(session_id, content)
        await orchestrator.map_fields(session_id, scenario_schema)
        preview = await orchestrator.preview(session_id)

        assert preview["statistics"]["error_records"] == 1
        assert preview["error_rows"][0]["row_index"] == 0
        assert preview["fixes"][0]["fix_type"] == "absolute_value"

        outcome = await orchestrator.execute(
            session_id, ImportConfig(approved_fix_types=[FixType.ABSOLUTE_VALUE])
        )
        assert outcome["approval_request_id"] is None
        await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)

        assert writer.committed[session_id][0]["price"] == 19.99
        assert repository.fix_effectiveness["absolute_value"]["applied"] == 1

        # Preview reflects the fixed rows that were committed
        stats = orchestrator.store.get(session_id).preview["statistics"]
        assert stats["error_records"] == 0
        assert stats["validation"]["applied_fixes"] == 1


class TestFailures:

    async def test_empty_file_fails_session(self, make_orchestrator):
        orchestrator = make_orchestrator()
        session_id = await orchestrator.create_session(FileMeta(file_name="empty.csv"))
        with pytest.raises(EmptyInputError):
            await orchestrator.analyze(session_id, b"prod_name,amt,sku\n")

        status = await orchestrator.get_status(session_id)
        assert status["status"] == "failed"
        assert status["error_log"][-1]["error_code"] == "ERR_EMPTY_INPUT"
        assert status["next_action"]["action"] == "review_errors"

    async def test_every_batch_failing_fails_session(
        self, make_orchestrator, repository, scenario_csv, scenario_schema
    ):
        writer = InMemoryRecordWriter(fail_chunks={0: 99})
        orchestrator = make_orchestrator(
            committer=BatchCommitter(writer, repository, max_retries=1, backoff_seconds=0.0)
        )
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        await orchestrator.execute(session_id)

        session = await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)
        assert session.status == SessionStatus.FAILED
        assert session.error_log[-1]["error_code"] == "ERR_ALL_BATCHES_FAILED"

    async def test_unknown_session(self, make_orchestrator):
        with pytest.raises(SessionNotFoundError):
            await make_orchestrator().get_status("missing")


class TestTransitions:

    async def test_out_of_order_calls_are_refused(self, make_orchestrator, scenario_csv, scenario_schema):
        orchestrator = make_orchestrator()
        session_id = await orchestrator.create_session(FileMeta(file_name="products.csv"))
        with pytest.raises(InvalidTransitionError):
            await orchestrator.map_fields(session_id, scenario_schema)

        await orchestrator.analyze(session_id, scenario_csv)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.preview(session_id)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.execute(session_id)

    async def test_analysis_leaves_session_ready_for_mapping(self, make_orchestrator, scenario_csv):
        orchestrator = make_orchestrator()
        session_id = await orchestrator.create_session(FileMeta(file_name="products.csv"))
        await orchestrator.analyze(session_id, scenario_csv)
        status = await orchestrator.get_status(session_id)
        assert status["status"] == "analyzing"
        assert status["next_action"]["action"] == "map_fields"
        assert status["progress"]["total_records"] == 3

    async def test_remap_after_preview(self, make_orchestrator, scenario_csv, scenario_schema):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        await orchestrator.map_fields(session_id, scenario_schema)
        status = await orchestrator.get_status(session_id)
        assert status["status"] == "mapping_complete"

    def test_terminal_states_reachable_from_every_active_state(self):
        terminal = {SessionStatus.FAILED, SessionStatus.CANCELLED, SessionStatus.TIMEOUT}
        for status, targets in ALLOWED_TRANSITIONS.items():
            assert terminal <= targets, status

    def test_next_action_for_every_status(self):
        for status in SessionStatus:
            action = next_action(status)
            assert action["action"]
            assert action["actor"] in ("user", "system", "approver")


class TestCancel:

    async def test_cancel_idle_session(self, make_orchestrator, scenario_csv, scenario_schema):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)

        session = await orchestrator.cancel(session_id)
        assert session.status == SessionStatus.CANCELLED
        again = await orchestrator.cancel(session_id)
        assert again.status == SessionStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await orchestrator.execute(session_id)

    async def test_cancel_withdraws_pending_approval(
        self, make_orchestrator, fixed_score, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(scorer=fixed_score(0.55))
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        outcome = await orchestrator.execute(session_id)
        request_id = outcome["approval_request_id"]

        await orchestrator.cancel(session_id)
        request = orchestrator.router.get(request_id)
        assert request.status == ApprovalStatus.REJECTED
        assert orchestrator.router.decisions == []
        with pytest.raises(AlreadyResolvedError):
            await orchestrator.resolve_approval(request_id, request.assigned_to[0], DecisionType.APPROVE)

    async def test_cancel_during_commit(self, make_orchestrator, repository, scenario_csv, scenario_schema):
        writer = InMemoryRecordWriter(delay_seconds=0.05)
        orchestrator = make_orchestrator(committer=BatchCommitter(writer, repository, max_concurrency=1))
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema, batch_size=1)
        await orchestrator.execute(session_id)

        session = await orchestrator.cancel(session_id)
        assert session.status == SessionStatus.PROCESSING

        session = await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)
        assert session.status == SessionStatus.CANCELLED
        assert len(writer.committed.get(session_id, {})) < 3


class TestEventsAndRetention:

    async def test_event_stream_is_ordered_and_ends_on_completion(
        self, make_orchestrator, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator()
        session_id = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        await orchestrator.execute(session_id)
        await orchestrator.wait_until_settled(session_id, timeout=SETTLE_TIMEOUT)

        events = await collect_events(orchestrator, session_id)
        sequences = [e.sequence for e in events]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)
        assert events[0].step == "initiated"
        assert events[-1].type == EventType.COMPLETE
        assert events[-1].percentage == 100.0
        assert any(e.step == "batch_committed" for e in events)

    async def test_expired_sessions_are_purged(self, make_orchestrator, scenario_csv, scenario_schema):
        orchestrator = make_orchestrator(store=SessionStore(retention_minutes=0))
        finished = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        active = await orchestrator.create_session(FileMeta(file_name="other.csv"))
        await orchestrator.cancel(finished)

        assert orchestrator.purge_expired() == [finished]
        with pytest.raises(SessionNotFoundError):
            await orchestrator.get_status(finished)
        assert (await orchestrator.get_status(active))["status"] == "initiated"

    async def test_purge_drops_resolved_approval_records(
        self, make_orchestrator, fixed_score, repository, scenario_csv, scenario_schema
    ):
        orchestrator = make_orchestrator(store=SessionStore(retention_minutes=0), scorer=fixed_score(0.55))
        rejected = await prepared_session(orchestrator, scenario_csv, scenario_schema)
        waiting = await prepared_session(orchestrator, scenario_csv, scenario_schema)

        outcome = await orchestrator.execute(rejected)
        request = orchestrator.router.get(outcome["approval_request_id"])
        await orchestrator.resolve_approval(request.request_id, request.assigned_to[0], DecisionType.REJECT)
        pending_id = (await orchestrator.execute(waiting))["approval_request_id"]

        assert orchestrator.purge_expired() == [rejected]
        assert list(orchestrator.router.requests) == [pending_id]
        assert orchestrator.router.decisions == []
        assert len(repository.decisions) == 1
        await orchestrator.shutdown()
