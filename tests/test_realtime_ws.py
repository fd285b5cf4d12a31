"""WebSocket handshake and event delivery through the FastAPI app."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from taskverse import app as app_module
from taskverse.service.runtime import get_runtime
from taskverse.service.tokens import ACCESS


@pytest.fixture
def client():
    return TestClient(app_module.app)


def signup(client, username):
    response = client.post(
        "/api/auth/register",
        json={"username": username, "email": f"{username}@example.com", "password": "secret123"},
    )
    data = response.json()["data"]
    return data["user"], data["tokens"]["accessToken"]


class TestHandshake:
    def test_missing_token_closes_4401(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/api/ws"):
                pass
        assert exc.value.code == 4401

    def test_garbage_token_closes_4403(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/api/ws?token=not-a-token"):
                pass
        assert exc.value.code == 4403

    def test_expired_token_closes_4403(self, client):
        user, _ = signup(client, "alice")
        runtime = get_runtime()
        expired = runtime.codec.issue(
            user["id"], ACCESS, runtime.settings.jwt_secret, timedelta(hours=-1)
        )
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/api/ws?token={expired}"):
                pass
        assert exc.value.code == 4403

    def test_non_ascii_signature_closes_4403(self, client):
        _, token = signup(client, "alice")
        header, payload, _ = token.split(".")
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/api/ws?token={header}.{payload}.sig%C3%A9"):
                pass
        assert exc.value.code == 4403

    def test_connected_frame_with_query_token(self, client):
        user, token = signup(client, "alice")
        with client.websocket_connect(f"/api/ws?token={token}") as ws:
            frame = ws.receive_json()
        assert frame == {
            "event": "connected",
            "data": {"userId": user["id"], "username": "alice"},
        }

    def test_bearer_header_accepted(self, client):
        _, token = signup(client, "alice")
        with client.websocket_connect(
            "/api/ws", headers={"Authorization": f"Bearer {token}"}
        ) as ws:
            assert ws.receive_json()["event"] == "connected"

    def test_non_bearer_header_closes_4401(self, client):
        _, token = signup(client, "alice")
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/api/ws", headers={"Authorization": f"Basic {token}"}):
                pass
        assert exc.value.code == 4401

    def test_lowercase_bearer_scheme_accepted(self, client):
        _, token = signup(client, "alice")
        with client.websocket_connect(
            "/api/ws", headers={"Authorization": f"bearer {token}"}
        ) as ws:
            assert ws.receive_json()["event"] == "connected"


class TestEventDelivery:
    def test_assignee_receives_task_created(self, client):
        _, alice_token = signup(client, "alice")
        bob, bob_token = signup(client, "bob")
        with client.websocket_connect(f"/api/ws?token={bob_token}") as ws:
            assert ws.receive_json()["event"] == "connected"
            response = client.post(
                "/api/tasks",
                headers={"Authorization": f"Bearer {alice_token}"},
                json={"title": "Review PR", "assignedTo": bob["id"]},
            )
            assert response.status_code == 201
            task_id = response.json()["data"]["task"]["id"]

            created = ws.receive_json()
            assert created["event"] == "task:created"
            assert created["data"]["taskId"] == task_id
            assert created["data"]["createdBy"]["username"] == "alice"
            assigned = ws.receive_json()
            assert assigned["event"] == "task:assigned"
            assert assigned["data"]["assignedTo"] == bob["id"]

    def test_unknown_frame_gets_error(self, client):
        _, token = signup(client, "alice")
        with client.websocket_connect(f"/api/ws?token={token}") as ws:
            ws.receive_json()
            ws.send_text('{"event": "nope"}')
            reply = ws.receive_json()
        assert reply["event"] == "error"
