"""Tests for api/websocket.py -- event replay and client commands."""

from collections.abc import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agents.tool_runner import MockToolRunner
from api import websocket
from api.routes import router, set_workspace_manager
from events.bus import get_event_bus, reset_event_bus
from workspace_manager import WorkspaceManager


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    reset_event_bus()
    manager = WorkspaceManager(get_event_bus(), client_factory=MockToolRunner)
    app = FastAPI()
    app.include_router(router)
    app.include_router(websocket.websocket_router)
    set_workspace_manager(manager)
    websocket.set_workspace_manager(manager)
    with TestClient(app) as c:
        yield c
    reset_event_bus()


class TestWebSocket:
    def test_history_replayed_on_connect(self, client: TestClient) -> None:
        workspace_id = client.post("/api/workspaces", json={"name": "Live"}).json()["workspace_id"]

        with client.websocket_connect(f"/ws/{workspace_id}") as ws:
            first = ws.receive_json()

        assert first["type"] == "workspace_created"
        assert first["workspace_id"] == workspace_id
        assert first["data"]["name"] == "Live"

    def test_ping(self, client: TestClient) -> None:
        workspace_id = client.post("/api/workspaces").json()["workspace_id"]

        with client.websocket_connect(f"/ws/{workspace_id}") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping", "timestamp": 12.5})
            assert ws.receive_json() == {"type": "pong", "timestamp": 12.5}

    def test_cancel_without_run(self, client: TestClient) -> None:
        workspace_id = client.post("/api/workspaces").json()["workspace_id"]

        with client.websocket_connect(f"/ws/{workspace_id}") as ws:
            ws.receive_json()
            ws.send_json({"type": "cancel"})
            event = ws.receive_json()

        assert event["type"] == "run_cancelled"
        assert event["data"] == {"error": "No run in progress", "accepted": False}

    def test_cancel_unknown_workspace(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/ws_missing") as ws:
            ws.send_json({"type": "cancel"})
            event = ws.receive_json()

        assert event["type"] == "run_cancelled"
        assert event["data"]["accepted"] is False
        assert "not found" in event["data"]["error"]

    def test_edits_stream_to_client(self, client: TestClient) -> None:
        workspace_id = client.post("/api/workspaces").json()["workspace_id"]

        with client.websocket_connect(f"/ws/{workspace_id}") as ws:
            ws.receive_json()
            client.post(f"/api/workspaces/{workspace_id}/nodes", json={"role": "output"})
            added = ws.receive_json()

        assert added["type"] == "node_added"
        assert added["data"]["node"]["role"] == "output"
