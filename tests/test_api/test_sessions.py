"""
API tests for sessions and approvals, run against an in-memory orchestrator.
"""

import time

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import create_app


@pytest.fixture
def client(make_orchestrator):
    app = create_app()
    app.state.orchestrator = make_orchestrator()
    with TestClient(app) as test_client:
        yield test_client


def wait_for_status(client, session_id, wanted, attempts=100):
    body = None
    for _ in range(attempts):
        body = client.get(f"/api/v1/sessions/{session_id}").json()
        if body["status"] == wanted:
            return body
        time.sleep(0.05)
    raise AssertionError(f"session stuck in {body['status'] if body else 'unknown'}")


def start_session(client, content, **fields):
    resp = client.post("/api/v1/sessions", json={"file_name": "products.csv", **fields})
    assert resp.status_code == 201
    session_id = resp.json()["session_id"]

    resp = client.post(
        f"/api/v1/sessions/{session_id}/analyze",
        files={"file": ("products.csv", content, "text/csv")},
    )
    assert resp.status_code == 200
    return session_id


def prepare(client, content, **fields):
    session_id = start_session(client, content, **fields)
    resp = client.post(
        f"/api/v1/sessions/{session_id}/mappings",
        json={"target_field_names": ["name", "price", "sku"]},
    )
    assert resp.status_code == 200
    resp = client.get(f"/api/v1/sessions/{session_id}/preview")
    assert resp.status_code == 200
    return session_id


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["engine"] == "ready"

    def test_ready(self, client):
        assert client.get("/health/ready").json() == {"ready": True}


class TestSessionLifecycle:

    def test_analyze_returns_fields(self, client, scenario_csv):
        session_id = start_session(client, scenario_csv)
        status = client.get(f"/api/v1/sessions/{session_id}").json()
        assert status["status"] == "analyzing"
        assert status["next_action"]["action"] == "map_fields"

    def test_mapping_response(self, client, scenario_csv):
        session_id = start_session(client, scenario_csv)
        resp = client.post(
            f"/api/v1/sessions/{session_id}/mappings",
            json={"target_field_names": ["name", "price", "sku"]},
        )
        body = resp.json()
        targets = {m["source_field"]: m["target_field"] for m in body["mappings"]}
        assert targets == {"prod_name": "name", "amt": "price", "sku": "sku"}
        assert body["metadata"]["mapped_fields"] == 3

    def test_full_import(self, client, scenario_csv):
        session_id = prepare(client, scenario_csv)

        resp = client.post(f"/api/v1/sessions/{session_id}/execute")
        assert resp.status_code == 202
        assert resp.json()["approval_request_id"] is None

        body = wait_for_status(client, session_id, "completed")
        assert body["progress"]["succeeded_records"] == 3
        assert body["results"]["commit"]["succeeded"] == 3
        assert body["next_action"]["action"] == "view_results"

    def test_preview_statistics(self, client, scenario_csv):
        session_id = start_session(client, scenario_csv)
        client.post(
            f"/api/v1/sessions/{session_id}/mappings",
            json={"target_field_names": ["name", "price", "sku"]},
        )
        body = client.get(f"/api/v1/sessions/{session_id}/preview", params={"limit": 2}).json()
        assert len(body["valid_rows"]) == 2
        assert body["statistics"]["total_records"] == 3
        assert body["statistics"]["validation_status"] == "WARN"

    def test_event_stream_replays_history(self, client, scenario_csv):
        session_id = prepare(client, scenario_csv)
        client.post(f"/api/v1/sessions/{session_id}/execute")
        wait_for_status(client, session_id, "completed")

        resp = client.get(f"/api/v1/sessions/{session_id}/events")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert "event: complete" in resp.text
        assert resp.text.startswith("id: 1\n")

    def test_cancel(self, client, scenario_csv):
        session_id = prepare(client, scenario_csv)
        resp = client.post(f"/api/v1/sessions/{session_id}/cancel")
        assert resp.json()["status"] == "cancelled"


class TestErrors:

    def test_unknown_session(self, client):
        resp = client.get("/api/v1/sessions/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "ERR_SESSION_NOT_FOUND"

    def test_execute_before_preview(self, client, scenario_csv):
        session_id = start_session(client, scenario_csv)
        resp = client.post(f"/api/v1/sessions/{session_id}/execute")
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "ERR_INVALID_TRANSITION"

    def test_empty_upload(self, client):
        resp = client.post("/api/v1/sessions", json={"file_name": "empty.csv"})
        session_id = resp.json()["session_id"]
        resp = client.post(
            f"/api/v1/sessions/{session_id}/analyze",
            files={"file": ("empty.csv", b"", "text/csv")},
        )
        assert resp.status_code == 422
        assert client.get(f"/api/v1/sessions/{session_id}").json()["status"] == "failed"

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "secret")
        assert client.post("/api/v1/sessions", json={"file_name": "a.csv"}).status_code == 401
        resp = client.post("/api/v1/sessions", json={"file_name": "a.csv"}, headers={"X-API-Key": "secret"})
        assert resp.status_code == 201


class TestApprovals:

    def test_approve_over_api(self, client, scenario_csv):
        session_id = prepare(client, scenario_csv, auto_advance_threshold=0.99)
        resp = client.post(f"/api/v1/sessions/{session_id}/execute")
        assert resp.status_code == 202
        request_id = resp.json()["approval_request_id"]
        assert resp.json()["status"] == "awaiting_approval"

        queue = client.get("/api/v1/approvals").json()
        assert [r["request_id"] for r in queue["pending"]] == [request_id]
        assert queue["stats"]["pending"] == 1

        request = client.get(f"/api/v1/approvals/{request_id}").json()
        resp = client.post(
            f"/api/v1/approvals/{request_id}/decision",
            json={"approver": request["assigned_to"][0], "decision": "approve", "reasoning": "checked sample"},
        )
        assert resp.status_code == 200
        assert resp.json()["session_status"] == "processing"
        wait_for_status(client, session_id, "completed")

        again = client.post(
            f"/api/v1/approvals/{request_id}/decision",
            json={"approver": request["assigned_to"][0], "decision": "reject"},
        )
        assert again.status_code == 409

    def test_unassigned_approver(self, client, scenario_csv):
        session_id = prepare(client, scenario_csv, auto_advance_threshold=0.99)
        request_id = client.post(f"/api/v1/sessions/{session_id}/execute").json()["approval_request_id"]
        resp = client.post(
            f"/api/v1/approvals/{request_id}/decision",
            json={"approver": "mallory", "decision": "approve"},
        )
        assert resp.status_code == 403
        client.post(f"/api/v1/sessions/{session_id}/cancel")

    def test_unknown_request(self, client):
        assert client.get("/api/v1/approvals/nope").status_code == 404
