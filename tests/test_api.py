"""
Tests for the run API endpoints
"""

import json

import pytest
from fastapi.testclient import TestClient

from agent_graph.core.agent_config import RunServiceConfig
from agent_graph.main import app
from agent_graph.services.run_service import create_run_service, get_run_service


@pytest.fixture
def run_service():
    service = create_run_service(RunServiceConfig(max_concurrent_runs=2))

    async def override():
        return service

    app.dependency_overrides[get_run_service] = override
    yield service
    app.dependency_overrides.clear()


@pytest.fixture
def client(run_service):
    with TestClient(app) as test_client:
        yield test_client


def _events(response):
    return [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]


def _request(**overrides):
    body = {
        "agents": [{"agent_id": "a", "provider": "fake", "client_options": {"responses": ["Hello there"]}}],
        "messages": [{"role": "user", "content": "hi"}],
    }
    body.update(overrides)
    return body


def test_root(client):
    """The root endpoint answers"""
    response = client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


def test_health(client):
    """A fresh service reports healthy with no active runs"""
    response = client.get("/api/v1/runs/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["active_runs"] == 0
    assert body["max_concurrent_runs"] == 2


def test_stream_run(client, run_service):
    """A run streams its run steps and deltas, then a done event"""
    response = client.post("/api/v1/runs/stream", json=_request(thread_id="thread-1"))

    assert response.status_code == 200
    events = _events(response)
    names = [event["event"] for event in events]
    assert names[0] == "on_run_step"
    assert "on_message_delta" in names
    assert names[-1] == "done"
    text = "".join(
        part["text"]
        for event in events if event["event"] == "on_message_delta"
        for part in event["data"]["delta"]["content"]
    )
    assert text == "Hello there"
    assert run_service.active_runs == {}


def test_stream_accepts_from_and_to_edges(client):
    """Edges use from/to in the request body"""
    body = _request(
        agents=[
            {"agent_id": "a", "provider": "fake", "client_options": {"responses": ["plan"]}},
            {"agent_id": "b", "provider": "fake", "client_options": {"responses": ["done"]}},
        ],
        edges=[{"from": "a", "to": "b", "kind": "direct"}],
    )

    response = client.post("/api/v1/runs/stream", json=body)

    assert response.status_code == 200
    agents = [
        event["data"].get("agent_id")
        for event in _events(response) if event["event"] == "on_run_step"
    ]
    assert agents == ["a", "b"]


def test_model_failure_is_streamed_as_error(client):
    """Failures during the run arrive as an error event before done"""
    body = _request(agents=[{"agent_id": "a", "provider": "unknown-provider"}])

    events = _events(client.post("/api/v1/runs/stream", json=body))

    assert events[-2]["event"] == "error"
    assert "unknown-provider" in events[-2]["data"]["message"]
    assert events[-1]["event"] == "done"


def test_invalid_workflow_is_rejected(client):
    """Edges naming unknown agents are a bad request"""
    response = client.post("/api/v1/runs/stream", json=_request(edges=[{"from": "a", "to": "ghost"}]))
    assert response.status_code == 400


def test_request_validation(client):
    """At least one agent and one message are required"""
    assert client.post("/api/v1/runs/stream", json=_request(agents=[])).status_code == 422
    assert client.post("/api/v1/runs/stream", json=_request(messages=[])).status_code == 422


def test_capacity_limit(client, run_service):
    """Creating a run beyond the limit is refused"""
    run_service.config.max_concurrent_runs = 0
    assert client.post("/api/v1/runs/stream", json=_request()).status_code == 429


def test_cancel_unknown_run(client):
    """Cancelling a run that is not active is a 404"""
    assert client.delete("/api/v1/runs/run_missing").status_code == 404
