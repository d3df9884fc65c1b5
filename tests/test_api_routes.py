"""
API route integration tests using FastAPI TestClient.
Tests the full HTTP request/response cycle against a pipeline wired to the
scripted agent and the in-memory manifest store.
Run: pytest tests/test_api_routes.py -v
"""
import hmac
import json
import hashlib
import time

import pytest
from fastapi.testclient import TestClient

from promoter.agent_client.client import SyncState, HealthState

ERROR = (SyncState.ERROR, HealthState.UNKNOWN)


@pytest.fixture
def server(monkeypatch, make_pipeline):
    from promoter.api import server as server_module
    monkeypatch.setattr(server_module, "pipeline", make_pipeline())
    return server_module


@pytest.fixture
def client(server):
    """Create a TestClient for the FastAPI app."""
    with TestClient(server.app, raise_server_exceptions=False) as c:
        yield c


def _wait_for(client, run_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"/runs/{run_id}").json()
        if predicate(data):
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"run {run_id} stuck in {data['status']}")
        time.sleep(0.01)


def _stage(data, name):
    return next(s for s in data["stages"] if s["stage_name"] == name)


def _awaiting_prod(data):
    return _stage(data, "prod")["state"] == "awaiting_approval"


# ══════════════════════════════════════════════════════════════════
# SYSTEM / HEALTH
# ══════════════════════════════════════════════════════════════════


class TestSystemRoutes:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["checks"]["delivery_agent"]["status"] == "ok"

    def test_info(self, client):
        r = client.get("/info")
        assert r.status_code == 200
        assert r.json()["platform"] == "Promotion Controller"
        assert r.json()["stages"] == 2

    def test_stages(self, client):
        r = client.get("/stages")
        stages = r.json()["stages"]
        assert [s["name"] for s in stages] == ["dev", "prod"]
        assert stages[1]["requires_approval"] is True

    def test_openapi_tags_present(self, client):
        schema = client.get("/openapi.json").json()
        tag_names = [t["name"] for t in schema.get("tags", [])]
        for tag in ("System", "Runs", "Approvals", "Applications", "Webhooks"):
            assert tag in tag_names


# ══════════════════════════════════════════════════════════════════
# RUNS
# ══════════════════════════════════════════════════════════════════


class TestRunRoutes:

    def test_start_and_approve(self, client):
        r = client.post("/runs", json={"artifact_version": "42", "requested_by": "alice"})
        assert r.status_code == 202
        run_id = r.json()["run_id"]

        data = _wait_for(client, run_id, _awaiting_prod)
        assert _stage(data, "dev")["state"] == "converged"

        pending = client.get("/approvals").json()
        assert pending["count"] == 1
        assert pending["approvals"][0]["run_id"] == run_id

        r = client.post(f"/runs/{run_id}/stages/prod/approve", params={"approved_by": "bob"})
        assert r.status_code == 200
        assert r.json()["status"] == "approved"

        data = _wait_for(client, run_id, lambda d: d["status"] == "converged")
        assert _stage(data, "prod")["approved_by"] == "bob"

    def test_deny(self, client):
        run_id = client.post("/runs", json={"artifact_version": "42"}).json()["run_id"]
        _wait_for(client, run_id, _awaiting_prod)

        r = client.post(f"/runs/{run_id}/stages/prod/deny", params={"denied_by": "bob", "reason": "freeze"})
        assert r.status_code == 200
        data = _wait_for(client, run_id, lambda d: d["status"] == "rejected")
        assert _stage(data, "prod")["denial_reason"] == "freeze"

    def test_aborted_run_reports_failure(self, client, fake_agent):
        fake_agent.script("hello-world-dev", ERROR)
        run_id = client.post("/runs", json={"artifact_version": "42"}).json()["run_id"]
        data = _wait_for(client, run_id, lambda d: d["status"] == "aborted")
        assert data["failed_stage"] == "dev"
        assert data["error"]["error"] == "ConvergenceFailed"

    def test_conflicting_run(self, client):
        run_id = client.post("/runs", json={"artifact_version": "42"}).json()["run_id"]
        _wait_for(client, run_id, _awaiting_prod)

        r = client.post("/runs", json={"artifact_version": "43"})
        assert r.status_code == 409
        assert r.json()["detail"]["active_run_id"] == run_id

    def test_cancel(self, client, fake_agent):
        run_id = client.post("/runs", json={"artifact_version": "42"}).json()["run_id"]
        _wait_for(client, run_id, _awaiting_prod)

        r = client.post(f"/runs/{run_id}/cancel", params={"cancelled_by": "carol"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"
        assert not any(kind == "rollback" for kind, _ in fake_agent.calls)

        r = client.post(f"/runs/{run_id}/cancel")
        assert r.status_code == 400

    def test_invalid_version(self, client):
        r = client.post("/runs", json={"artifact_version": "bad version"})
        assert r.status_code == 400

    def test_list_runs(self, client):
        run_id = client.post("/runs", json={"artifact_version": "42"}).json()["run_id"]
        _wait_for(client, run_id, _awaiting_prod)
        data = client.get("/runs", params={"status": "running"}).json()
        assert data["count"] == 1
        assert client.get("/runs", params={"status": "converged"}).json()["count"] == 0

    def test_unknown_run(self, client):
        assert client.get("/runs/run-missing").status_code == 404
        assert client.post("/runs/run-missing/cancel").status_code == 404
        assert client.post("/runs/run-missing/stages/prod/approve").status_code == 404

    def test_approve_without_pending_request(self, client):
        run_id = client.post("/runs", json={"artifact_version": "42"}).json()["run_id"]
        _wait_for(client, run_id, _awaiting_prod)
        r = client.post(f"/runs/{run_id}/stages/dev/approve")
        assert r.status_code == 400


# ══════════════════════════════════════════════════════════════════
# APPLICATIONS
# ══════════════════════════════════════════════════════════════════


class TestRollbackRoutes:

    def test_rollback(self, client, fake_agent):
        r = client.post("/applications/hello-world-prod/rollback", json={"to_version": "41"})
        assert r.status_code == 200
        assert r.json()["application_id"] == "hello-world-prod"
        assert ("rollback", "hello-world-prod") in fake_agent.calls


# ══════════════════════════════════════════════════════════════════
# WEBHOOKS
# ══════════════════════════════════════════════════════════════════


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestBuildWebhook:

    def test_starts_run(self, client):
        r = client.post("/webhooks/build", json={"build_number": 42, "commit_message": "feat: add greeting"})
        assert r.status_code == 202
        assert r.json()["status"] == "started"
        assert r.json()["artifact_version"] == "42"

    def test_skip_marker_ignored(self, client, server):
        r = client.post("/webhooks/build", json={
            "artifact_version": "42", "commit_message": "promote hello-world to 42 [skip ci]",
        })
        assert r.status_code == 202
        assert r.json()["status"] == "ignored"
        assert server.pipeline.list_runs() == []

    def test_signature_required_when_secret_set(self, client, server, monkeypatch):
        monkeypatch.setattr(server.settings, "webhook_secret", "s3cret")
        body = json.dumps({"artifact_version": "42"}).encode()

        r = client.post("/webhooks/build", content=body, headers={"X-Signature-256": "sha256=bogus"})
        assert r.status_code == 401

        r = client.post("/webhooks/build", content=body, headers={
            "X-Signature-256": _sign(body, "s3cret"), "Content-Type": "application/json",
        })
        assert r.status_code == 202
        assert r.json()["status"] == "started"

    def test_missing_version(self, client):
        r = client.post("/webhooks/build", json={"commit_message": "chore"})
        assert r.status_code == 400

    @pytest.mark.parametrize("body", [b"[]", b"\"42\"", b"42", b"null"])
    def test_non_object_body_rejected(self, client, server, body):
        r = client.post("/webhooks/build", content=body, headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert server.pipeline.list_runs() == []

    def test_malformed_json_rejected(self, client):
        r = client.post("/webhooks/build", content=b"{not json", headers={"Content-Type": "application/json"})
        assert r.status_code == 400


def test_signature_helper():
    from promoter.api.server import verify_signature
    body = b'{"artifact_version": "42"}'
    assert verify_signature(body, _sign(body, "k"), "k")
    assert not verify_signature(body, _sign(body, "other"), "k")
    assert not verify_signature(body, "", "k")
