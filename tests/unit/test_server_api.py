"""Unit tests for the REST API."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from conftest import chain, wait_until
from fastapi.testclient import TestClient

from flow_engine.engine.dispatcher import WorkflowEngine
from flow_engine.server import create_app
from flow_engine.store import JsonStore


@pytest.fixture
def client(engine: WorkflowEngine) -> Iterator[TestClient]:
    engine.init()
    with TestClient(create_app(engine)) as test_client:
        yield test_client


def _nodes(*specs):  # type: ignore[no-untyped-def]
    return [node.model_dump() for node in chain(*specs)]


def _create(client: TestClient, **values) -> dict:  # type: ignore[no-untyped-def]
    values.setdefault("type", "collection")
    values.setdefault("enabled", True)
    response = client.post("/api/workflows", json=values)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client: TestClient) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "ready": True}


def test_workflow_crud(client: TestClient) -> None:
    created = _create(client, title="orders", key="orders")
    assert created["current"] is True
    assert created["id"] == 1

    assert client.get(f"/api/workflows/{created['id']}").json()["title"] == "orders"
    assert [w["id"] for w in client.get("/api/workflows", params={"key": "orders"}).json()] == [1]

    patched = client.patch(f"/api/workflows/{created['id']}", json={"title": "renamed"})
    assert patched.status_code == 200
    assert patched.json()["title"] == "renamed"
    assert patched.json()["enabled"] is True

    deleted = client.delete(f"/api/workflows/{created['id']}")
    assert deleted.status_code == 200
    assert client.get(f"/api/workflows/{created['id']}").status_code == 404
    assert client.delete(f"/api/workflows/{created['id']}").status_code == 404


def test_revision_is_a_disabled_copy(client: TestClient) -> None:
    created = _create(client, key="k", nodes=_nodes(("end", {})))

    response = client.post(f"/api/workflows/{created['id']}/revision", json={"title": "v2"})

    assert response.status_code == 201
    revision = response.json()
    assert revision["key"] == "k"
    assert revision["title"] == "v2"
    assert revision["enabled"] is False
    assert revision["current"] is None
    assert len(revision["nodes"]) == 1
    assert client.post("/api/workflows/99/revision").status_code == 404


def test_enabled_filter(client: TestClient) -> None:
    _create(client, key="a")
    _create(client, key="b", enabled=False)

    enabled = client.get("/api/workflows", params={"enabled": True}).json()

    assert [w["key"] for w in enabled] == ["a"]


def test_trigger_then_resume_a_manual_job(client: TestClient, engine: WorkflowEngine) -> None:
    workflow = _create(client, nodes=_nodes(("manual", {"form": {"who": "{{$context.name}}"}})))

    response = client.post(
        f"/api/workflows/{workflow['id']}/trigger", json={"context": {"name": "ann"}}
    )

    assert response.status_code == 200, response.text
    detail = response.json()
    assert detail["execution"]["status"] == "started"
    [job] = detail["jobs"]
    assert job["status"] == "pending"
    assert job["result"] == {"form": {"who": "ann"}}

    resumed = client.post(f"/api/jobs/{job['id']}/resume", json={"result": {"approved": True}})
    assert resumed.status_code == 202
    assert resumed.json()["status"] == "resolved"

    execution_id = detail["execution"]["id"]
    wait_until(
        lambda: client.get(f"/api/executions/{execution_id}").json()["execution"]["status"]
        == "resolved"
    )
    jobs = client.get(f"/api/executions/{execution_id}").json()["jobs"]
    assert jobs[0]["result"] == {"approved": True}

    assert client.post(f"/api/jobs/{job['id']}/resume", json={}).status_code == 409
    assert client.post("/api/jobs/999/resume", json={}).status_code == 404


def test_trigger_errors(client: TestClient) -> None:
    assert client.post("/api/workflows/42/trigger", json={}).status_code == 404

    unknown = _create(client, type="webhook")
    response = client.post(f"/api/workflows/{unknown['id']}/trigger", json={})
    assert response.status_code == 409
    assert "webhook" in response.json()["detail"]


def test_trigger_requires_a_ready_engine(settings) -> None:
    idle = WorkflowEngine(JsonStore(), settings)
    with TestClient(create_app(idle)) as test_client:
        workflow = _create(test_client)

        response = test_client.post(f"/api/workflows/{workflow['id']}/trigger", json={})

        assert response.status_code == 503
        assert test_client.get("/api/health").json()["ready"] is False


def test_cancel_execution(client: TestClient) -> None:
    workflow = _create(client, nodes=_nodes(("manual", {})))
    detail = client.post(f"/api/workflows/{workflow['id']}/trigger", json={}).json()
    execution_id = detail["execution"]["id"]

    response = client.post(f"/api/executions/{execution_id}/cancel")

    assert response.status_code == 200
    assert response.json()["execution"]["status"] == "canceled"
    assert response.json()["jobs"][0]["status"] == "canceled"
    assert client.post(f"/api/executions/{execution_id}/cancel").status_code == 409
    assert client.post("/api/executions/999/cancel").status_code == 404


def test_list_executions_filters(client: TestClient) -> None:
    first = _create(client, key="a", nodes=_nodes(("manual", {})))
    second = _create(client, key="b")
    client.post(f"/api/workflows/{first['id']}/trigger", json={})
    client.post(f"/api/workflows/{second['id']}/trigger", json={})

    started = client.get("/api/executions", params={"status": "started"}).json()
    of_second = client.get("/api/executions", params={"workflow_id": second["id"]}).json()

    assert [e["workflow_id"] for e in started] == [first["id"]]
    assert [e["status"] for e in of_second] == ["resolved"]
    assert client.get("/api/executions/999").status_code == 404
