import pytest
from fastapi.testclient import TestClient

from app.core import health as health_module
from app.main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def _mock_env(monkeypatch):
    monkeypatch.setattr(health_module.settings, "environment", "test")
    yield


def _stub_checks(monkeypatch, *, database: dict, cache: dict) -> None:
    async def fake_db():
        return database

    async def fake_cache():
        return cache

    monkeypatch.setattr(health_module, "_check_db", fake_db)
    monkeypatch.setattr(health_module, "_check_cache", fake_cache)


def test_health_live_returns_ok() -> None:
    response = client.get("/api/v1/health/live")
    assert response.status_code == 200
    body = response.json()
    assert body["code"] == "ok"
    assert body["data"]["status"] == "ok"
    assert "timestamp" in body["data"]


def test_health_ready_ok(monkeypatch) -> None:
    _stub_checks(monkeypatch, database={"status": "ok"}, cache={"status": "ok", "mode": "disabled"})

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload["status"] == "ok"
    assert payload["ready"] is True
    assert payload["environment"] == "test"
    assert payload["version"] == health_module.APP_VERSION
    assert payload["checks"]["cache"]["mode"] == "disabled"


def test_health_ready_degraded_when_database_down(monkeypatch) -> None:
    _stub_checks(monkeypatch, database={"status": "error", "error": "unreachable"}, cache={"status": "ok"})

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload["status"] == "degraded"
    assert payload["ready"] is False
    assert payload["checks"]["database"]["status"] == "error"


def test_health_ready_degraded_when_cache_down(monkeypatch) -> None:
    _stub_checks(monkeypatch, database={"status": "ok"}, cache={"status": "error", "error": "timeout"})

    payload = client.get("/api/v1/health/ready").json()["data"]
    assert payload["ready"] is False
    assert payload["checks"]["cache"]["error"] == "timeout"


async def test_cache_check_reports_disabled_mode(monkeypatch) -> None:
    monkeypatch.setattr(health_module.settings, "application_cache_enabled", False)

    assert await health_module._check_cache() == {"status": "ok", "mode": "disabled"}
