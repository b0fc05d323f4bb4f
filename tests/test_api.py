"""Tests for the FastAPI surface (memory store, mock channels, ticker off)."""
import pytest
from fastapi.testclient import TestClient

from api.main import app


CUSTOMERS = [
    {"id": "c1", "name": "Ana Souza", "email": "ana@example.com", "phone": "+5511999990001"},
    {"id": "c2", "name": "Bruno Lima", "email": "bruno@example.com"},
    {"id": "c3", "name": "No Contact"},
]

TEMPLATE = {"body": "Hi {{first_name}}", "subject": "News"}


@pytest.fixture
def client(test_settings):
    test_settings.audience.segments = {"customers": CUSTOMERS, "silent": [{"id": "x"}]}
    with TestClient(app) as c:
        yield c


def drain(client):
    client.portal.call(client.app.state.service.drain)


def create(client, **overrides):
    body = {"channel": "email", "audience_selector": "customers", "template": TEMPLATE}
    body.update(overrides)
    return client.post("/api/v1/dispatches", json=body)


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert set(data["channels"]) == {"email", "chat"}
        assert data["ticker_running"] is False
        assert data["inflight_jobs"] == []


class TestDispatchLifecycle:
    def test_create_and_complete(self, client):
        resp = create(client)
        assert resp.status_code == 201
        created = resp.json()
        assert created["status"] == "running"
        assert created["total_candidates"] == 3
        assert created["valid_candidates"] == 2

        drain(client)
        status = client.get(f"/api/v1/dispatches/{created['job_id']}").json()
        assert status["status"] == "completed"
        assert status["sent_count"] == 2
        assert status["failed_count"] == 0
        assert status["remaining"] == 0

    def test_chat_channel_validity(self, client):
        created = create(client, channel="chat").json()
        assert created["valid_candidates"] == 1

    def test_commands(self, client):
        job_id = create(client, start=False).json()["job_id"]

        resp = client.post(f"/api/v1/dispatches/{job_id}/commands", json={"command": "pause"})
        assert resp.json() == {"job_id": job_id, "status": "paused"}

        resp = client.post(f"/api/v1/dispatches/{job_id}/commands", json={"command": "resume"})
        assert resp.json()["status"] == "running"
        drain(client)
        assert client.get(f"/api/v1/dispatches/{job_id}").json()["status"] == "completed"

    def test_cancel_then_resume_conflicts(self, client):
        job_id = create(client, start=False).json()["job_id"]
        client.post(f"/api/v1/dispatches/{job_id}/commands", json={"command": "cancel"})

        resp = client.post(f"/api/v1/dispatches/{job_id}/commands", json={"command": "resume"})

        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

    def test_list_with_filter(self, client):
        create(client, start=False)
        create(client, start=False, audience_selector="customers")
        client.post("/api/v1/dispatches/continue")

        pending = client.get("/api/v1/dispatches", params={"status": "pending"}).json()
        assert len(pending) == 2
        assert client.get("/api/v1/dispatches", params={"status": "running"}).json() == []

    def test_continue_is_idempotent_when_idle(self, client):
        for _ in range(2):
            resp = client.post("/api/v1/dispatches/continue")
            assert resp.status_code == 200
            assert resp.json() == {"scanned": 0, "entries": []}


class TestErrors:
    def test_unknown_selector(self, client):
        resp = create(client, audience_selector="nobody-knows")
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_selector"
        assert client.get("/api/v1/dispatches").json() == []

    def test_empty_audience(self, client):
        resp = create(client, audience_selector="silent")
        assert resp.status_code == 422
        assert resp.json()["error"] == "empty_audience"

    def test_unknown_job(self, client):
        resp = client.get("/api/v1/dispatches/missing")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"
        resp = client.post("/api/v1/dispatches/missing/commands", json={"command": "pause"})
        assert resp.status_code == 404

    @pytest.mark.parametrize("overrides", [
        {"channel": "pigeon"},
        {"audience_selector": ""},
        {"interval_seconds": -1},
    ])
    def test_payload_validation(self, client, overrides):
        assert create(client, **overrides).status_code == 422

    def test_unknown_command(self, client):
        job_id = create(client, start=False).json()["job_id"]
        resp = client.post(f"/api/v1/dispatches/{job_id}/commands", json={"command": "explode"})
        assert resp.status_code == 422


class TestWebhooks:
    def test_bounced_address_fails_in_next_job(self, client):
        resp = client.post("/webhooks/email/bounce", json={"email": "ana@example.com"})
        assert resp.json()["status"] == "processed"

        job_id = create(client).json()["job_id"]
        drain(client)

        status = client.get(f"/api/v1/dispatches/{job_id}").json()
        assert status["status"] == "completed"
        assert (status["sent_count"], status["failed_count"]) == (1, 1)
        assert status["error_log"][0]["recipient_id"] == "c1"
        assert status["error_log"][0]["reason"].startswith("Suppressed")

    def test_unsubscribe_and_complaint(self, client):
        assert client.post("/webhooks/email/unsubscribe",
                           json={"email": "Bruno@Example.com"}).json()["status"] == "unsubscribed"
        assert client.post("/webhooks/email/complaint",
                           json={"email": "ana@example.com"}).json()["status"] == "suppressed"
