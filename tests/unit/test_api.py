import json

import pytest
from fastapi.testclient import TestClient

from flowcore.api import create_app
from flowcore.errors import StoreUnavailable
from flowcore.ingress import sign_payload
from flowcore.runtime import Runtime


@pytest.fixture
def runtime(config, repo):
    config.ingress.webhook_secrets = {"github": "s3cret"}
    return Runtime(config, repository=repo)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime, start_runtime=False)) as c:
        yield c


def _submit(client, event_id=None, type="content-publish", payload=None):
    body = {"source": "api-test", "type": type, "payload": payload or {}}
    if event_id:
        body["id"] = event_id
    return client.post("/events", json=body)


def test_submit_event_accepted(client):
    response = _submit(client, event_id="e-1", payload={"topic": "launch"})
    assert response.status_code == 202
    data = response.json()
    assert data["event_id"] == "e-1"
    assert data["workflow_id"]
    assert len(data["job_ids"]) == 1

    again = _submit(client, event_id="e-1")
    assert again.status_code == 202
    assert again.json()["workflow_id"] == data["workflow_id"]
    assert again.json()["job_ids"] == []


def test_idempotency_key_header(client):
    response = client.post(
        "/events",
        json={"source": "api-test", "type": "content-publish"},
        headers={"Idempotency-Key": "hdr-1"},
    )
    assert response.json()["event_id"] == "hdr-1"


def test_unknown_workflow_type_is_422(client):
    assert _submit(client, type="nope").status_code == 422


def test_saturated_queue_is_429(config, repo):
    config.queue.max_depth = 1
    runtime = Runtime(config, repository=repo)
    with TestClient(create_app(runtime, start_runtime=False)) as client:
        assert _submit(client).status_code == 202
        response = _submit(client)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1"
        assert client.get("/metrics").json()["pending_events"] == 1


def test_webhook_signature(client):
    body = json.dumps({"id": "gh-1", "type": "content-publish", "payload": {}}).encode()
    signed = client.post(
        "/webhooks/github",
        content=body,
        headers={"X-Hub-Signature-256": "sha256=" + sign_payload("s3cret", body)},
    )
    assert signed.status_code == 202
    assert signed.json()["event_id"] == "gh-1"

    forged = client.post("/webhooks/github", content=body, headers={"X-Hub-Signature-256": "sha256=00"})
    assert forged.status_code == 401

    assert client.post("/webhooks/cms", content=b"not json").status_code == 400


def test_workflow_lifecycle_over_http(client):
    workflow_id = _submit(client).json()["workflow_id"]

    status = client.get(f"/workflows/{workflow_id}").json()
    assert status["workflow"]["current_state"] == "pending_generation"
    assert [j["kind"] for j in status["jobs"]] == ["generate_content"]

    moved = client.post(f"/workflows/{workflow_id}/outcome", json={"outcome": "succeeded"})
    assert moved.status_code == 200
    assert moved.json()["state"] == "pending_approval"

    approved = client.post(
        f"/workflows/{workflow_id}/outcome",
        json={"outcome": "approved", "context": {"approved_by": "editor"}, "triggered_by": "editor"},
    )
    assert approved.json()["state"] == "publishing"
    assert len(approved.json()["job_ids"]) == 1

    status = client.get(f"/workflows/{workflow_id}").json()
    assert status["workflow"]["context"]["approved_by"] == "editor"
    assert [t["to_state"] for t in status["transitions"]] == ["pending_approval", "publishing"]
    assert status["transitions"][1]["triggered_by"] == "editor"

    listed = client.get("/workflows", params={"state": "publishing"}).json()
    assert [w["id"] for w in listed] == [workflow_id]


def test_illegal_outcome_is_409_and_alerts(client):
    workflow_id = _submit(client).json()["workflow_id"]
    response = client.post(f"/workflows/{workflow_id}/outcome", json={"outcome": "approved"})
    assert response.status_code == 409
    assert response.json()["state"] == "pending_generation"

    alerts = client.get("/alerts", params={"severity": "critical"}).json()
    assert [a["alert_type"] for a in alerts] == ["illegal_transition"]
    alert_id = alerts[0]["id"]

    acked = client.post(f"/alerts/{alert_id}/acknowledge", json={"by": "oncall"})
    assert acked.json()["acknowledged_by"] == "oncall"
    assert client.post(f"/alerts/{alert_id}/resolve").status_code == 200
    assert client.get("/alerts").json() == []
    assert len(client.get("/alerts", params={"include_resolved": True}).json()) == 1
    assert client.post("/alerts/missing/resolve").status_code == 404


def test_cancel_workflow(client, runtime):
    workflow_id = _submit(client).json()["workflow_id"]
    response = client.post(f"/workflows/{workflow_id}/cancel", json={"reason": "pulled"})
    assert response.status_code == 200
    assert response.json() == {"workflow_id": workflow_id, "state": "cancelled"}
    assert client.post(f"/workflows/{workflow_id}/cancel").status_code == 409
    assert client.get("/metrics").json()["scaling"]["queue_depth"] == 0


def test_missing_workflow_is_404(client):
    assert client.get("/workflows/nope").status_code == 404
    assert client.post("/workflows/nope/cancel").status_code == 404


def test_metrics_snapshot(client):
    _submit(client)
    metrics = client.get("/metrics").json()
    assert metrics["scaling"]["queue_depth"] == 1
    assert metrics["totals"]["job_enqueued"] == 1
    assert metrics["dispatch_halted"] is False


def test_health_reports_halt(client, runtime):
    healthy = client.get("/health")
    assert healthy.status_code == 200
    assert healthy.json() == {"status": "ok", "system_health": "healthy"}

    runtime.dispatcher.halt(StoreUnavailable("database unreachable"))
    halted = client.get("/health")
    assert halted.status_code == 503
    assert halted.json() == {"status": "halted", "reason": "database unreachable"}
