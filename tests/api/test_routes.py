"""Tests for the HTTP API — envelope, status codes and the main flows."""

import pytest
from fastapi.testclient import TestClient

from hostplane.api.app import create_app

ADMIN = {"X-Hostplane-Role": "admin", "X-Hostplane-User": "admin-1"}


@pytest.fixture
def client(make_ctx):
    with TestClient(create_app(make_ctx())) as c:
        yield c


def create_site(client, name="demo"):
    resp = client.post("/api/sites", json={"name": name})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def create_service(client, site_id, name="web", **extra):
    body = {
        "name": name,
        "type": "node",
        "commands": {"start": "node server.js"},
        "health_check": {"enabled": False},
        **extra,
    }
    resp = client.post(f"/api/sites/{site_id}/services", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["data"]["supervisor"] == "FakeSupervisor"


def test_site_crud_and_errors(client):
    site = create_site(client)
    assert site["status"] == "active"
    assert site["port_range"] == {"start": 4001, "end": 4011}

    resp = client.post("/api/sites", json={"name": "demo"})
    assert resp.status_code == 400
    assert resp.json() == {
        "success": False, "error": "Site 'demo' already exists", "code": "validation_error",
    }

    resp = client.post("/api/sites", json={})
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"

    resp = client.get("/api/sites/missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"

    resp = client.patch(f"/api/sites/{site['id']}", json={"description": "landing page"})
    assert resp.json()["data"]["description"] == "landing page"

    listed = client.get("/api/sites").json()["data"]
    assert [s["name"] for s in listed] == ["demo"]

    resp = client.delete(f"/api/sites/{site['id']}")
    assert resp.json()["success"] is True
    assert client.get("/api/sites").json()["data"] == []


def test_demo_site_lifecycle_with_external_kill(client, supervisor):
    site = create_site(client)
    web = create_service(client, site["id"])
    assert web["port"] == 4001

    resp = client.post(f"/api/services/{web['id']}/start")
    assert resp.json()["data"]["status"] == "running"

    info = client.get(f"/api/sites/{site['id']}").json()["data"]
    assert info["services"][0]["unit"]["running"] is True

    supervisor.kill(web["unit_name"])
    health = client.get(f"/api/services/{web['id']}/health").json()["data"]
    assert health["drift"] is True
    assert health["persisted"] == "running"
    assert health["desired"] == "running"
    assert health["actual"] == "stopped"

    resp = client.post(f"/api/services/{web['id']}/restart")
    assert resp.json()["data"]["status"] == "running"
    health = client.get(f"/api/services/{web['id']}/health").json()["data"]
    assert health["drift"] is False

    status = client.get(f"/api/services/{web['id']}/status").json()["data"]
    assert status["unit"]["running"] is True


def test_supervisor_failure_maps_to_502_with_generic_message(client, supervisor):
    site = create_site(client)
    web = create_service(client, site["id"])
    supervisor.fail_on.add("start")

    resp = client.post(f"/api/services/{web['id']}/start")
    assert resp.status_code == 502
    assert resp.json() == {
        "success": False, "error": "Supervisor operation failed", "code": "supervisor_error",
    }

    resp = client.post(f"/api/services/{web['id']}/restart")
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_state"

    alerts = client.get("/api/stats/alerts", params={"type": "service_down"}).json()["data"]
    assert len(alerts) == 1


def test_site_fan_out_partial_failure(client, supervisor):
    site = create_site(client)
    create_service(client, site["id"], "web")
    db = create_service(client, site["id"], "db", start_priority=10)
    supervisor.fail_units.add(db["unit_name"])

    resp = client.post(f"/api/sites/{site['id']}/start")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "partial_failure"
    assert body["data"]["started"] == ["web"]
    assert body["data"]["failed"][0]["name"] == "db"

    resp = client.delete(f"/api/sites/{site['id']}")
    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is False
    assert body["data"]["deleted_services"] == ["web"]
    assert client.get(f"/api/sites/{site['id']}").json()["data"]["site"]["status"] == "error"


def test_commands_and_privilege(client, runner):
    site = create_site(client)
    web = create_service(client, site["id"])

    resp = client.post(f"/api/services/{web['id']}/commands", json={
        "name": "reset-db", "command": "npm run reset", "dangerous": True,
    })
    assert resp.status_code == 201

    resp = client.post(f"/api/services/{web['id']}/commands/reset-db/execute")
    assert resp.status_code == 403
    assert resp.json()["code"] == "permission_denied"

    resp = client.post(f"/api/services/{web['id']}/commands/reset-db/execute", headers=ADMIN)
    assert resp.json()["success"] is True
    assert runner.calls[-1]["command"] == "npm run reset"

    resp = client.post(f"/api/services/{web['id']}/install")
    assert resp.json()["data"]["command"] == "install"

    resp = client.delete(f"/api/services/{web['id']}/commands/reset-db")
    assert resp.json()["data"] == []


def test_bulk_and_environment(client):
    site = create_site(client)
    web = create_service(client, site["id"])

    resp = client.post("/api/services/bulk", json={"service_ids": [web["id"], "missing"], "action": "start"})
    assert resp.json()["data"]["summary"] == {"total": 2, "succeeded": 1, "failed": 1}

    resp = client.post("/api/services/bulk", json={"service_ids": [], "action": "start"})
    assert resp.status_code == 400

    resp = client.put(f"/api/services/{web['id']}/environment", json={"variables": {"NODE_ENV": "production"}})
    assert resp.json()["data"] == {"NODE_ENV": "production"}

    resp = client.post(f"/api/sites/{site['id']}/domains", json={"domain": "example.com"})
    assert resp.json()["data"][0]["is_primary"] is True


def test_stats_alerts_and_config(client, sampler):
    sampler.set_host(cpu=95.0)

    server = client.get("/api/stats/server").json()["data"]
    assert server["cpu"]["percent"] == 95.0

    resp = client.get("/api/stats/server/history", params={"hours": 0})
    assert resp.status_code == 400

    resp = client.put("/api/stats/config", json={"collection_interval": 5})
    assert resp.status_code == 400
    resp = client.put("/api/stats/config", json={"collection_interval": 60})
    assert resp.json()["data"]["collection_interval"] == 60
    assert client.get("/api/stats/config").json()["data"]["collection_interval"] == 60


def test_collect_and_acknowledge(client, sampler):
    sampler.set_host(cpu=95.0)

    resp = client.post("/api/stats/collect")
    assert resp.status_code == 403
    resp = client.post("/api/stats/collect", headers=ADMIN)
    assert resp.json()["data"]["cpu"]["percent"] == 95.0

    alerts = client.get("/api/stats/alerts").json()["data"]
    assert [a["message"] for a in alerts] == ["CPU critical: 95.0%"]

    resp = client.post(f"/api/stats/alerts/{alerts[0]['id']}/acknowledge", headers=ADMIN)
    assert resp.json()["data"]["status"] == "acknowledged"
    assert resp.json()["data"]["acknowledged_by"] == "admin-1"

    resp = client.post(f"/api/stats/alerts/{alerts[0]['id']}/resolve")
    assert resp.json()["data"]["status"] == "resolved"
    assert client.get("/api/stats/alerts").json()["data"] == []

    history = client.get("/api/stats/server/history").json()["data"]
    assert len(history) == 1
