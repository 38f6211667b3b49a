import httpx
import pytest
from fastapi.testclient import TestClient

from feedsync.admin import SCHEDULER_ENV, app
from feedsync.runtime import Runtime

from helpers import article, json_response, mock_client, newsdata_factory, page


@pytest.fixture
def client(conn, config, codec, sleeper):
    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.params.get("apikey", "none")
        return json_response(200, page([article(f"{key}-1"), article(f"{key}-2")]))

    runtime = Runtime(
        conn,
        config,
        http_client=mock_client(handler),
        codec=codec,
        connector_factory=newsdata_factory(sleeper),
    )
    app.state.runtime = runtime
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.state.runtime = None


def _create_source(client, **overrides):
    payload = {
        "name": "Business news",
        "provider_type": "newsdata",
        "credential": "api-key-123",
        "config": {"categories": ["business"], "max_pages": 1},
    }
    payload.update(overrides)
    response = client.post("/sources", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_sources_crud(client):
    source = _create_source(client)
    assert source["has_credential"] is True
    assert "credential" not in source

    response = client.get("/sources")
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [source["id"]]

    response = client.get(f"/sources/{source['id']}")
    assert response.status_code == 200
    assert response.json()["name"] == "Business news"

    response = client.patch(f"/sources/{source['id']}", json={"enabled": False})
    assert response.status_code == 200
    assert response.json()["enabled"] is False

    jobs = {job["job_type"]: job for job in client.get("/jobs").json()}
    assert jobs[f"source_sync_{source['id']}"]["enabled"] is False

    response = client.delete(f"/sources/{source['id']}")
    assert response.status_code == 200
    assert client.get(f"/sources/{source['id']}").status_code == 404
    assert f"source_sync_{source['id']}" not in {job["job_type"] for job in client.get("/jobs").json()}


def test_sources_validation_errors(client):
    response = client.post("/sources", json={"name": "x", "provider_type": "carrier-pigeon"})
    assert response.status_code == 400
    response = client.post(
        "/sources", json={"name": "x", "provider_type": "newsdata", "config": {"max_pages": 99}}
    )
    assert response.status_code == 400
    assert client.patch("/sources/999", json={"name": "x"}).status_code == 404
    assert client.delete("/sources/999").status_code == 404
    assert client.post("/sources/999/sync").status_code == 404


def test_sync_and_items(client):
    source = _create_source(client)

    response = client.post(f"/sources/{source['id']}/sync")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["items_added"] == 2

    items = client.get(f"/sources/{source['id']}/items").json()
    assert len(items) == 2

    response = client.post(f"/items/{items[0]['id']}/flag", json={"flag": "starred"})
    assert response.status_code == 200
    starred = [item for item in client.get(f"/sources/{source['id']}/items").json() if item["is_starred"]]
    assert len(starred) == 1
    assert client.post(f"/items/{items[0]['id']}/flag", json={"flag": "archived"}).status_code == 400

    history = client.get("/jobs/history", params={"job_type": f"source_sync_{source['id']}"}).json()
    assert len(history) == 1
    assert history[0]["status"] == "success"


def test_sync_all_and_connection_test(client):
    source = _create_source(client)

    response = client.post("/sources/sync-all")
    assert response.status_code == 200
    assert response.json()["successful"] == 1

    response = client.post(f"/sources/{source['id']}/test")
    assert response.status_code == 200
    assert response.json()["success"] is True


def test_jobs_update_and_run(client):
    source = _create_source(client)
    job_type = f"source_sync_{source['id']}"

    response = client.patch(f"/jobs/{job_type}", json={"interval_seconds": 120})
    assert response.status_code == 200
    assert response.json()["frequency_seconds"] == 120
    assert response.json()["frequency_cron"] is None

    response = client.patch(f"/jobs/{job_type}", json={"cron": "0 0 * * * *", "interval_seconds": 60})
    assert response.status_code == 400
    assert client.patch("/jobs/missing", json={"enabled": True}).status_code == 404

    response = client.post(f"/jobs/{job_type}/run")
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert client.post("/jobs/missing/run").status_code == 404


def test_runtime_config_endpoints(client):
    response = client.get("/admin/config/runtime")
    assert response.status_code == 200
    cfg = response.json()["config"]
    assert cfg["sync"]["max_keep"] == 4000

    cfg["sync"]["max_keep"] = 100
    assert client.put("/admin/config/runtime", json={"config": cfg}).status_code == 200
    assert client.get("/admin/config/runtime").json()["config"]["sync"]["max_keep"] == 100

    response = client.put("/admin/config/runtime", json={"config": {"app": {}}})
    assert response.status_code == 400


def test_providers_and_scheduler_reload(client):
    providers = client.get("/sources/providers").json()
    assert providers[0]["provider_type"] == "newsdata"
    assert client.post("/admin/scheduler/reload").status_code == 409


def test_lifespan_opens_runtime_and_runs_scheduler(db_path, monkeypatch):
    monkeypatch.setenv(SCHEDULER_ENV, "1")
    with TestClient(app) as client:
        runtime = app.state.runtime
        assert runtime.conn.path == db_path
        assert runtime.scheduler.running is True

        response = client.get("/jobs")
        assert response.status_code == 200
        assert [job["job_type"] for job in response.json()] == ["sources_sync_all"]

        response = client.post("/admin/scheduler/reload")
        assert response.status_code == 200
        assert response.json() == {"scheduled": 0}

        source = _create_source(client)
        response = client.post("/admin/scheduler/reload")
        assert response.status_code == 200
        assert response.json() == {"scheduled": 1}
        assert source["job_id"] is not None
        assert list(runtime.scheduler.scheduled()) == [f"job-{source['job_id']}"]

    assert app.state.runtime is None
    assert runtime.scheduler.running is False


def test_lifespan_leaves_scheduler_off_by_default(db_path, monkeypatch):
    monkeypatch.delenv(SCHEDULER_ENV, raising=False)
    with TestClient(app) as client:
        assert app.state.runtime.scheduler.running is False
        assert client.get("/sources").json() == []
        assert client.post("/admin/scheduler/reload").status_code == 409
