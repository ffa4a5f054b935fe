import types

import pytest
from fastapi.testclient import TestClient

from email_queue_worker.api import API_TOKEN_HEADER_NAME, create_app
from email_queue_worker.errors import BrokerConnectionError
from email_queue_worker.models import parse_event

API_TOKEN = "secret-token"


class DummyBroker:
    def __init__(self):
        self.enqueued = []
        self.connected = True
        self.jobs = {
            "job-1": {"id": "job-1", "status": "failed", "attempts_made": 5, "data": {"type": "WELCOME_EMAIL"}},
        }

    async def counts(self):
        if not self.connected:
            raise BrokerConnectionError()
        return {"waiting": 2, "delayed": 0, "active": 1, "completed": 5, "failed": 0, "total": 8}

    async def enqueue(self, event, *, job_id=None, max_attempts=None, priority=None):
        parsed = parse_event(event)
        self.enqueued.append((parsed.type, job_id, max_attempts, priority))
        return {"id": job_id or f"{parsed.type}-abc-1", "duplicate": False, "priority": priority or 2}

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def remove(self, job_id):
        return self.jobs.pop(job_id, None) is not None


class DummyWorker:
    def __init__(self):
        self.broker = DummyBroker()
        self.status = "healthy"
        self.calls = []
        self.is_paused = False
        self.is_shutting_down = False
        self.context = types.SimpleNamespace(
            dead_letters=types.SimpleNamespace(recent=lambda limit: [{"job_id": "j1"}][:limit]),
            metrics=types.SimpleNamespace(generate_latest=lambda: b"metrics-data"),
        )

    async def pause(self):
        self.calls.append("pause")
        self.is_paused = True

    async def resume(self):
        self.calls.append("resume")
        if not self.is_shutting_down:
            self.is_paused = False

    def get_worker_health(self):
        return {"status": self.status, "active_jobs": 0}

    def get_resilience_status(self):
        return {"status": "connected", "reconnect_attempts": 0}

    async def trigger_reconnection(self):
        self.calls.append("reconnect")
        return {"success": True, "message": "Reconnection successful"}

    async def get_delivery_tracking_status(self):
        return {"total_tracked_deliveries": 0, "recent_deliveries": []}

    async def verify_email_delivery(self, event):
        parse_event(event)
        return {"was_delivered": False, "delivery_key": "k"}


@pytest.fixture
def client_and_worker():
    worker = DummyWorker()
    client = TestClient(create_app(worker, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, worker


def test_rejects_missing_token():
    client = TestClient(create_app(DummyWorker(), api_token=API_TOKEN))
    response = client.get("/health")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyWorker()))
    assert client.get("/health").status_code == 200


def test_health_is_503_unless_healthy(client_and_worker):
    client, worker = client_and_worker
    assert client.get("/health").json()["status"] == "healthy"

    worker.status = "shutting_down"
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_operator_endpoints(client_and_worker):
    client, worker = client_and_worker

    assert client.get("/resilience").json()["status"] == "connected"
    assert client.post("/resilience/reconnect").json() == {"success": True, "message": "Reconnection successful"}
    assert client.get("/delivery-tracking").json()["total_tracked_deliveries"] == 0
    assert client.get("/dead-letters", params={"limit": 10}).json() == {
        "ok": True, "error": None, "count": 1, "entries": [{"job_id": "j1"}],
    }
    assert client.get("/queue").json() == {
        "ok": True,
        "counts": {"waiting": 2, "delayed": 0, "active": 1, "completed": 5, "failed": 0, "total": 8},
        "is_paused": False,
    }
    assert worker.calls == ["reconnect"]


def test_queue_is_503_when_broker_down(client_and_worker):
    client, worker = client_and_worker
    worker.broker.connected = False
    response = client.get("/queue")
    assert response.status_code == 503


def test_enqueue_job(client_and_worker, make_event):
    client, worker = client_and_worker

    response = client.post("/jobs", json={"event": make_event("WELCOME_EMAIL"), "priority": 3})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "id": "WELCOME_EMAIL-abc-1", "duplicate": False, "priority": 3}
    assert worker.broker.enqueued == [("WELCOME_EMAIL", None, None, 3)]


def test_enqueue_rejects_invalid_event(client_and_worker, make_event):
    client, worker = client_and_worker

    response = client.post("/jobs", json={"event": make_event(locale="fr")})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid locale: fr"
    assert worker.broker.enqueued == []


def test_enqueue_rejects_unknown_fields(client_and_worker, make_event):
    client, _ = client_and_worker
    response = client.post("/jobs", json={"event": make_event(), "queue": "other"})
    assert response.status_code == 422


def test_verify_delivery(client_and_worker, make_event):
    client, _ = client_and_worker

    ok = client.post("/delivery-tracking/verify", json={"event": make_event()})
    assert ok.json()["was_delivered"] is False

    bad = client.post("/delivery-tracking/verify", json={"event": {"type": "NOPE"}})
    assert bad.status_code == 422
    assert bad.json()["detail"] == "Invalid event type: NOPE"


def test_metrics_endpoint_uses_worker_metrics(client_and_worker):
    client, _ = client_and_worker

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.text == "metrics-data"


def test_pause_and_resume(client_and_worker):
    client, worker = client_and_worker

    assert client.post("/queue/pause").json() == {"ok": True, "is_paused": True}
    assert client.get("/queue").json()["is_paused"] is True
    assert client.post("/queue/resume").json() == {"ok": True, "is_paused": False}
    assert worker.calls == ["pause", "resume"]


def test_resume_refused_during_shutdown(client_and_worker):
    client, worker = client_and_worker
    client.post("/queue/pause")
    worker.is_shutting_down = True

    response = client.post("/queue/resume")

    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot resume worker during shutdown"
    assert worker.is_paused is True


def test_get_job(client_and_worker):
    client, _ = client_and_worker

    response = client.get("/jobs/job-1")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["job"]["status"] == "failed"
    assert body["job"]["data"] == {"type": "WELCOME_EMAIL"}

    missing = client.get("/jobs/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Job nope not found"


def test_delete_job(client_and_worker):
    client, worker = client_and_worker

    assert client.delete("/jobs/job-1").json() == {"ok": True}
    assert worker.broker.jobs == {}

    again = client.delete("/jobs/job-1")
    assert again.status_code == 404
    assert again.json()["detail"] == "Job job-1 not found"
