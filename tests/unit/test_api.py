import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from nexusflow.api import create_app
from nexusflow.persistence import ExecutionStatus

ADMIN = {"X-User-Id": "admin-x", "X-Organization-Id": "org-x", "X-User-Role": "admin"}
MEMBER_X = {"X-User-Id": "user-a", "X-Organization-Id": "org-x"}
MEMBER_Y = {"X-User-Id": "user-b", "X-Organization-Id": "org-y"}


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def _create_template(client, graph_data) -> str:
    response = client.post(
        "/workflows/templates", json={"name": "Summarize", "graph": graph_data}, headers=ADMIN
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _execute(client, template_id, headers=MEMBER_X):
    return client.post(
        f"/workflows/{template_id}/execute", json={"input": {"text": "abc"}}, headers=headers
    )


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_missing_identity_is_unauthenticated(client):
    response = client.get("/workflows/templates")
    assert response.status_code == 401
    assert response.json() == {"error": "Authentication required", "kind": "unauthenticated"}


def test_unknown_role_is_rejected(client):
    response = client.get("/workflows/templates", headers={"X-User-Id": "u", "X-User-Role": "owner"})
    assert response.status_code == 400
    assert response.json()["kind"] == "validation_error"


def test_template_routes(client, graph_data):
    template_id = _create_template(client, graph_data)

    listed = client.get("/workflows/templates", headers=MEMBER_X).json()["templates"]
    assert [t["id"] for t in listed] == [template_id]
    assert client.get("/workflows/templates", headers=MEMBER_Y).json() == {"templates": []}

    forbidden = client.post(
        "/workflows/templates", json={"name": "T", "graph": graph_data}, headers=MEMBER_X
    )
    assert forbidden.status_code == 403

    malformed = client.post("/workflows/templates", json={"graph": graph_data}, headers=ADMIN)
    assert malformed.status_code == 400
    assert malformed.json() == {"error": "Invalid request payload", "kind": "validation_error"}


def test_execute_returns_accepted_with_ids(client, graph_data):
    template_id = _create_template(client, graph_data)

    response = _execute(client, template_id)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["jobId"] == body["executionId"]


def test_cross_org_access_reveals_nothing(client, graph_data, store):
    template_id = _create_template(client, graph_data)
    execution_id = _execute(client, template_id).json()["executionId"]

    for response in (
        client.get(f"/workflows/executions/{execution_id}", headers=MEMBER_Y),
        client.get(f"/jobs/{execution_id}/status", headers=MEMBER_Y),
        client.post(f"/workflows/executions/{execution_id}/cancel", headers=MEMBER_Y),
    ):
        assert response.status_code == 403
        assert response.json() == {"error": "Access denied", "kind": "forbidden"}

    assert _execute(client, template_id, MEMBER_Y).status_code == 403


def test_execution_read_routes(client, graph_data):
    template_id = _create_template(client, graph_data)
    execution_id = _execute(client, template_id).json()["executionId"]

    detail = client.get(f"/workflows/executions/{execution_id}", headers=MEMBER_X).json()
    assert detail["execution"]["id"] == execution_id
    assert detail["execution"]["status"] == "pending"
    assert detail["steps"] == []

    listed = client.get("/workflows/executions", headers=MEMBER_X).json()["executions"]
    assert [e["id"] for e in listed] == [execution_id]
    assert client.get("/workflows/executions", headers=MEMBER_Y).json() == {"executions": []}

    assert client.get("/workflows/executions/not-a-uuid", headers=MEMBER_X).status_code == 400


def test_cancel_route(client, graph_data):
    template_id = _create_template(client, graph_data)
    execution_id = _execute(client, template_id).json()["executionId"]

    response = client.post(f"/workflows/executions/{execution_id}/cancel", headers=MEMBER_X)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    again = client.post(f"/workflows/executions/{execution_id}/cancel", headers=MEMBER_X)
    assert again.status_code == 400


def test_status_stream_for_terminal_execution(client, graph_data, store):
    template_id = _create_template(client, graph_data)
    execution_id = _execute(client, template_id).json()["executionId"]
    asyncio.run(
        store.update_execution_status(
            execution_id, ExecutionStatus.COMPLETED, output={"summary": "s"}, progress=100
        )
    )

    response = client.get(f"/jobs/{execution_id}/status", headers=MEMBER_X)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    frames = [line for line in response.text.split("\n\n") if line]
    assert len(frames) == 1
    payload = json.loads(frames[0].removeprefix("data: "))
    assert payload["status"] == "completed"
    assert payload["progress"] == "100"
    assert payload["output"] == {"summary": "s"}


def test_queue_stats_route(client, graph_data):
    template_id = _create_template(client, graph_data)
    _execute(client, template_id)

    stats = client.get("/queues/workflows/stats", headers=ADMIN)
    assert stats.status_code == 200
    assert stats.json()["waiting"] == 1
    assert client.get("/queues/workflows/stats", headers=MEMBER_X).status_code == 403
    assert client.get("/queues/nope/stats", headers=ADMIN).status_code == 404
