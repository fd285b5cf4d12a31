"""Tests for the error body shape and the exception handlers.

Every failure returns ``{"error": <title>, "message": <text>}`` with optional
``details``; ``stack`` is only included in development.
"""

import json

import pytest
from argon2.exceptions import HashingError
from fastapi.testclient import TestClient

from taskverse import app as app_module
from taskverse.api.error_handling import error_response, error_title
from taskverse.api.schemas import Envelope, ErrorBody
from taskverse.config import reset_settings_cache
from taskverse.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_optional_fields_omitted(self):
        response = error_response(404, "Task not found")
        assert json.loads(response.body) == {"error": "Not Found", "message": "Task not found"}

    def test_custom_title_and_details(self):
        response = error_response(409, "Duplicate Entry", ["name already exists"], title="Conflict")
        body = json.loads(response.body)
        assert body["details"] == ["name already exists"]
        assert response.status_code == 409

    def test_unknown_status_title(self):
        assert error_title(418) == "Error"

    def test_envelope_defaults(self):
        assert Envelope().model_dump() == {"success": True, "message": None, "data": None}
        assert ErrorBody(error="Bad Request", message="x").details is None


class TestStackTraces:
    def _raise_and_render(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError as exc:
            return json.loads(error_response(500, "Internal Server Error", exc=exc).body)

    def test_hidden_outside_development(self):
        assert "stack" not in self._raise_and_render()

    def test_included_in_development(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "development")
        reset_settings_cache()
        body = self._raise_and_render()
        assert "RuntimeError: boom" in body["stack"]


class TestHandlers:
    def test_unknown_route(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Not Found", "message": "Route /api/nope not found"}

    def test_method_not_allowed(self, client):
        response = client.patch("/api/tasks")
        assert response.status_code == 405
        assert response.json()["error"] == "Method Not Allowed"

    def test_validation_details_strip_location(self, client):
        response = client.post("/api/auth/login", json={"password": "x"})
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation Error"
        assert {"field": "email", "message": "Field required"} in body["details"]

    def test_custom_validator_message(self, client):
        response = client.post(
            "/api/auth/login", json={"email": "nobody", "password": "secret123"}
        )
        assert response.json()["details"] == [{"field": "email", "message": "Invalid email"}]

    def test_malformed_json_is_400(self, client):
        response = client.post(
            "/api/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Bad Request"

    def test_server_error_keeps_message(self, client):
        class BrokenHasher:
            def hash(self, password):
                raise HashingError("out of memory")

        get_runtime().sessions._pwd_hasher = BrokenHasher()
        response = client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "alice@example.com", "password": "secret123"},
        )
        assert response.status_code == 500
        assert response.json() == {
            "error": "Internal Server Error",
            "message": "Failed to process password",
        }


class TestAppSurface:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["filesystem"]["status"] == "healthy"

    def test_api_info(self, client):
        body = client.get("/api").json()
        assert body["endpoints"]["tasks"] == "/api/tasks"

    def test_request_id_echoed(self, client):
        response = client.get("/api/nope", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"
