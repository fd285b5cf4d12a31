"""Rate limiting: in-process token bucket and the HTTP 429 responses."""

import pytest
from fastapi.testclient import TestClient

from taskverse import app as app_module
from taskverse.service.runtime import check_rate_limit, get_runtime, reset_runtime_for_tests


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def tight_auth_limit(monkeypatch):
    monkeypatch.setenv("AUTH_RATE_LIMIT_MAX", "2")
    reset_runtime_for_tests()


@pytest.fixture
def tight_general_limit(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "3")
    reset_runtime_for_tests()


class TestLocalBucket:
    async def test_allows_up_to_limit(self):
        runtime = get_runtime()
        assert runtime.cache is None
        results = [await check_rate_limit(runtime, "k", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_remaining_and_reset(self):
        runtime = get_runtime()
        allowed, remaining, reset = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)
        await check_rate_limit(runtime, "k", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 31

    async def test_keys_are_independent(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "a", 1, 60)
        assert await check_rate_limit(runtime, "b", 1, 60)
        assert not await check_rate_limit(runtime, "a", 1, 60)

    async def test_check_without_consuming(self):
        runtime = get_runtime()
        for _ in range(3):
            assert await check_rate_limit(runtime, "k", 1, 60, consume=False)
        assert await check_rate_limit(runtime, "k", 1, 60)
        assert not await check_rate_limit(runtime, "k", 1, 60, consume=False)

    async def test_non_positive_limit_disables(self):
        runtime = get_runtime()
        assert all([await check_rate_limit(runtime, "k", 0, 60) for _ in range(5)])


class TestHttpLimits:
    def test_auth_limit_returns_429_with_headers(self, client, tight_auth_limit):
        first = client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "alice@example.com", "password": "secret123"},
        )
        assert first.status_code == 201
        assert first.headers["X-RateLimit-Limit"] == "2"
        body = {"email": "alice@example.com", "password": "wrong-password"}
        for _ in range(2):
            assert client.post("/api/auth/login", json=body).status_code == 401

        limited = client.post("/api/auth/login", json=body)
        assert limited.status_code == 429
        assert limited.json() == {
            "error": "Too Many Requests",
            "message": "Too many authentication attempts, please try again later.",
        }
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        assert int(limited.headers["Retry-After"]) > 0

        good = {"email": "alice@example.com", "password": "secret123"}
        assert client.post("/api/auth/login", json=good).status_code == 429

    def test_successful_auth_requests_are_not_counted(self, client, tight_auth_limit):
        register = client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "alice@example.com", "password": "secret123"},
        )
        tokens = register.json()["data"]["tokens"]
        good = {"email": "alice@example.com", "password": "secret123"}
        statuses = [client.post("/api/auth/login", json=good).status_code for _ in range(5)]
        assert statuses == [200] * 5
        for _ in range(3):
            refreshed = client.post(
                "/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]}
            )
            assert refreshed.status_code == 200
            tokens = refreshed.json()["data"]["tokens"]
        assert refreshed.headers["X-RateLimit-Remaining"] == "2"

    def test_conflicting_register_is_counted(self, client, tight_auth_limit):
        body = {"username": "alice", "email": "alice@example.com", "password": "secret123"}
        assert client.post("/api/auth/register", json=body).status_code == 201
        for _ in range(2):
            assert client.post("/api/auth/register", json=body).status_code == 409
        assert client.post("/api/auth/register", json=body).status_code == 429

    def test_auth_limit_does_not_cover_profile(self, client, tight_auth_limit):
        for _ in range(4):
            assert client.get("/api/auth/profile").status_code == 401

    def test_general_limit_applies_to_api_only(self, client, tight_general_limit):
        for _ in range(3):
            assert client.get("/api").status_code == 200
        limited = client.get("/api")
        assert limited.status_code == 429
        assert limited.json()["message"] == "Too many requests from this IP, please try again later."
        assert "Retry-After" in limited.headers
        assert client.get("/health").status_code == 200
