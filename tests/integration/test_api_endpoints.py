"""Integration tests for the hook server endpoints."""

import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from src.main import NotifyApp
from src.models import LifecycleState, StateField
from src.server import create_app
from src.state_store import MemoryStateStore
from tests.fakes import CWD, PROJECT, FakeTransport, embed_of


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def notify_app(config, transport):
    """NotifyApp over an in-memory store; heartbeats off so no tasks outlive a request."""
    config.heartbeat_interval = 0
    return NotifyApp(config, store=MemoryStateStore(), transport=transport)


@pytest.fixture
def test_client(notify_app):
    return TestClient(notify_app.app)


def _post(client, event_name, **fields):
    payload = {"hook_event_name": event_name, "cwd": CWD, "session_id": "abcdef1234567890"}
    payload.update(fields)
    return client.post("/hooks/claude", json=payload)


class TestHealth:
    """Liveness endpoints."""

    def test_root(self, test_client):
        response = test_client.get("/")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "claude-notify"}

    def test_health(self, test_client):
        assert test_client.get("/health").json() == {"status": "healthy"}


class TestHookEndpoint:
    """POST /hooks/claude drives the engine."""

    def test_session_start(self, test_client, transport, notify_app):
        response = _post(test_client, "SessionStart")

        assert response.status_code == 200
        assert response.json() == {"status": "received", "hook_event": "SessionStart", "state": "online"}
        assert transport.operations == ["create"]
        assert notify_app.store.read_state(PROJECT) is LifecycleState.ONLINE

    def test_full_session(self, test_client, transport, notify_app):
        _post(test_client, "SessionStart")
        _post(test_client, "Notification", notification_type="permission_prompt", message="Allow Bash?")
        assert _post(test_client, "PostToolUse", tool_name="Bash").json()["state"] == "approved"
        assert _post(test_client, "PostToolUse", tool_name="Read").json()["state"] == "online"
        assert _post(test_client, "Notification", notification_type="idle_prompt").json()["state"] == "idle"
        assert _post(test_client, "SessionEnd").json()["state"] == "offline"

        assert "Session Offline" in embed_of(transport.last_payload)["title"]
        assert notify_app.store.read_state(PROJECT) is None
        assert notify_app.store.read(PROJECT, StateField.MESSAGE_ID) is not None

    @pytest.mark.parametrize("body", [b"", b"not json", b"[1, 2, 3]", b'"SessionStart"'])
    def test_malformed_body_is_accepted(self, test_client, transport, body):
        response = test_client.post("/hooks/claude", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json()["hook_event"] == "unknown"
        assert response.json()["state"] is None
        assert transport.calls == []

    def test_unsupported_event(self, test_client, transport):
        response = _post(test_client, "PreCompact")
        assert response.status_code == 200
        assert response.json()["state"] is None
        assert transport.calls == []

    def test_no_engine(self):
        client = TestClient(create_app())
        response = client.post("/hooks/claude", json={"hook_event_name": "SessionStart"})
        assert response.status_code == 200
        assert response.json()["state"] is None

    def test_disabled_after_startup(self, test_client, transport, config):
        config.disabled_marker.parent.mkdir(parents=True, exist_ok=True)
        config.disabled_marker.touch()

        response = _post(test_client, "SessionStart")
        assert response.status_code == 200
        assert response.json()["state"] is None
        assert transport.calls == []


class TestProjectEndpoint:
    """GET /projects/{project}."""

    def test_snapshot(self, test_client):
        _post(test_client, "SessionStart")
        _post(test_client, "PostToolUse", tool_name="Edit")

        response = test_client.get(f"/projects/{PROJECT}")
        assert response.status_code == 200
        data = response.json()
        assert data["project"] == PROJECT
        assert data["state"] == "online"
        assert data["message_id"] == "1001"
        assert data["tool_count"] == 1
        assert data["last_tool"] == "Edit"

    def test_unknown_project(self, test_client):
        assert test_client.get("/projects/ghost").status_code == 404

    def test_without_store(self):
        assert TestClient(create_app()).get("/projects/app").status_code == 503


class TestHeartbeatsEndpoint:
    """GET /heartbeats."""

    def test_disabled(self, test_client):
        assert test_client.get("/heartbeats").json() == {"enabled": False, "interval": 0, "projects": []}

    def test_active_projects(self):
        heartbeat = MagicMock(enabled=True, interval=300)
        heartbeat.active_projects.return_value = ["a", "b"]
        client = TestClient(create_app(heartbeat=heartbeat))
        assert client.get("/heartbeats").json() == {"enabled": True, "interval": 300, "projects": ["a", "b"]}
