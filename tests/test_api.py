from __future__ import annotations

from fastapi.testclient import TestClient

from .helpers.fakes import credentials
from .test_server import make_server


def test_snapshot_is_offline_before_discovery(tmp_path):
    server, _, _ = make_server(tmp_path)

    with TestClient(server.api.app) as client:
        response = client.get("/api/quota/snapshot")

    assert response.status_code == 200
    body = response.json()
    assert body["connected"] is False
    assert body["models"] == []


def test_refresh_discovers_and_syncs(tmp_path):
    server, _, _ = make_server(tmp_path, results=[credentials()])

    with TestClient(server.api.app) as client:
        client.post("/api/quota/refresh")
        response = client.post("/api/quota/refresh")
        status = client.get("/api/system/status").json()
        diagnostics = client.get("/api/system/diagnostics").json()
        client.portal.call(server.engine.stop)

    body = response.json()
    assert body["connected"] is True
    assert [m["model_id"] for m in body["models"]] == ["model-a", "model-b"]
    assert body["models"][0]["level"] == "normal"
    assert body["user_info"]["email"] == "ada@example.com"
    assert body["prompt_credits"]["available"] == 125
    assert status["port"] == 42100
    assert status["credentials"]["auth_token"] == "csrf..."
    assert diagnostics["verified_port"] == 42100
    assert diagnostics["guidance"] == ["Antigravity is running"]


def test_diagnostics_and_notifications_after_failed_refresh(tmp_path):
    server, _, _ = make_server(tmp_path)

    with TestClient(server.api.app) as client:
        assert client.get("/api/system/diagnostics").status_code == 404
        client.post("/api/quota/refresh")
        diagnostics = client.get("/api/system/diagnostics")
        notifications = client.get("/api/system/notifications").json()
        health = client.get("/api/system/health").json()

    assert diagnostics.status_code == 200
    assert diagnostics.json()["target_process"] == "language_server_linux"
    assert notifications[0]["kind"] == "discovery_failed"
    assert notifications[0]["guidance"] == ["Antigravity is running"]
    assert health["status"] == "degraded"


def test_group_mappings_round_trip(tmp_path):
    server, _, _ = make_server(tmp_path)

    with TestClient(server.api.app) as client:
        put = client.put("/api/settings/group-mappings", json={"mappings": {"model-a": "pool", "model-b": "pool"}})
        get = client.get("/api/settings/group-mappings")

    assert put.status_code == 200
    assert get.json() == {"grouping_enabled": True, "mappings": {"model-a": "pool", "model-b": "pool"}}
    assert (tmp_path / "state.yaml").exists()


def test_visible_models_validation(tmp_path):
    server, _, _ = make_server(tmp_path)

    with TestClient(server.api.app) as client:
        ok = client.put("/api/settings/visible-models", json={"model_ids": ["model-b"]})
        bad = client.put("/api/settings/visible-models", json={"model_ids": "model-b"})

    assert ok.json() == {"visible_models": ["model-b"]}
    assert bad.status_code == 422
    assert server.settings_store.get_settings().visible_models == ["model-b"]


def test_auto_group_without_snapshot_clears_mappings(tmp_path):
    server, _, _ = make_server(tmp_path)

    with TestClient(server.api.app) as client:
        response = client.post("/api/settings/auto-group")

    assert response.status_code == 200
    assert response.json()["mappings"] == {}


def test_rediscover_endpoint_reports_whether_started(tmp_path):
    server, _, _ = make_server(tmp_path)

    with TestClient(server.api.app) as client:
        body = client.post("/api/system/rediscover").json()

    assert body["started"] is True
    assert body["message"] == "Rediscovery initiated"
