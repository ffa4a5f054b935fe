import pytest
from fastapi.testclient import TestClient

from email_queue_worker import server
from email_queue_worker.api import API_TOKEN_HEADER_NAME
from email_queue_worker.config import WorkerConfig
from email_queue_worker.transport import SmtpTransport


@pytest.fixture
def config(tmp_path):
    return WorkerConfig(db_path=str(tmp_path / "jobs.db"), api_token="tok", concurrency=3, shutdown_timeout_ms=5000)


def test_load_factory_validates_reference():
    with pytest.raises(ValueError):
        server.load_factory("no-colon")
    with pytest.raises(ValueError):
        server.load_factory("os:sep")
    assert server.load_factory("os.path:join") is not None


def test_build_collaborators_requires_factory(config, monkeypatch):
    with pytest.raises(ValueError):
        server.build_collaborators(config)

    config.collaborators = "shop:build"
    monkeypatch.setattr(server, "load_factory", lambda path: lambda cfg: object())
    with pytest.raises(TypeError):
        server.build_collaborators(config)


def test_smtp_transport_from_config():
    with pytest.raises(ValueError):
        server.smtp_transport_from_config(WorkerConfig(smtp_host="smtp.local"))

    transport = server.smtp_transport_from_config(
        WorkerConfig(smtp_host="smtp.local", smtp_port=465, smtp_sender="shop@example.com")
    )
    assert isinstance(transport, SmtpTransport)
    assert transport.use_tls is True


@pytest.mark.asyncio
async def test_configured_settings_returns_admin_email():
    assert await server.ConfiguredSettings("admin@shop.example").get_admin_email() == "admin@shop.example"


def test_build_worker_uses_config(config, collaborators):
    worker = server.build_worker(config, collaborators)

    assert worker.concurrency == 3
    assert worker.broker.db_path == config.db_path
    assert worker.broker.lifecycle is worker.context.lifecycle
    assert worker.shutdown_coordinator.timeout == 5.0


def test_app_lifespan_starts_and_stops_worker(config, collaborators):
    worker = server.build_worker(config, collaborators)
    app = server.build_app(config, worker)

    with TestClient(app, headers={API_TOKEN_HEADER_NAME: "tok"}) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert client.get("/queue").json()["counts"]["total"] == 0

    assert worker.context.is_shutting_down is True
    assert worker.broker.is_connected is False
