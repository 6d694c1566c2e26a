"""Tests for per-route token buckets and ledger-driven 429 responses."""

import pytest
from fastapi.testclient import TestClient

from reliefgate import app as app_module
from reliefgate.service.runtime import check_rate_limit, get_runtime


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app_module.app)


class TestRouteBuckets:
    def test_login_bucket_per_email(self, client):
        """The eleventh login for one address within a minute is refused."""
        payload = {"email": "ghost@example.org", "password": "Wrong@2024x"}
        for _ in range(10):
            assert client.post("/v1/auth/login", json=payload).status_code == 401

        response = client.post("/v1/auth/login", json=payload)

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        retry_after = body["error"]["details"]["retry_after"]
        assert retry_after >= 1
        assert response.headers["Retry-After"] == str(retry_after)

        other = client.post("/v1/auth/login", json={"email": "other@example.org", "password": "x"})
        assert other.status_code == 401

    def test_address_variants_share_a_bucket(self, client):
        variants = ["Ghost@Example.org", " ghost@example.org", "GHOST@EXAMPLE.ORG "]
        for index in range(10):
            payload = {"email": variants[index % 3], "password": "Wrong@2024x"}
            assert client.post("/v1/auth/login", json=payload).status_code == 401

        response = client.post(
            "/v1/auth/login", json={"email": "ghost@example.org", "password": "Wrong@2024x"}
        )

        assert response.status_code == 429

    def test_reset_request_bucket(self, client):
        for _ in range(5):
            assert client.post("/v1/auth/forgot-password", json={"email": "a@example.org"}).status_code == 200

        response = client.post("/v1/auth/forgot-password", json={"email": "a@example.org"})

        assert response.status_code == 429
        assert "Retry-After" in response.headers


class TestLedgerLimits:
    def test_lockout_returns_retry_after(self, client):
        client.post(
            "/v1/auth/signup",
            json={
                "name": "Locked Out",
                "email": "locked@example.org",
                "password": "Relief@2024x",
                "agree_to_terms": True,
            },
        )
        for _ in range(5):
            client.post("/v1/auth/login", json={"email": "locked@example.org", "password": "Wrong@2024x"})

        response = client.post(
            "/v1/auth/login", json={"email": "locked@example.org", "password": "Relief@2024x"}
        )

        assert response.status_code == 429
        retry_after = int(response.headers["Retry-After"])
        assert 0 < retry_after <= 3600
        assert response.json()["error"]["details"] == {"retry_after": retry_after}

    def test_send_limit_returns_retry_after(self, client):
        for _ in range(3):
            assert client.post("/v1/auth/send-otp", json={"email": "volunteer@example.org"}).status_code == 200

        response = client.post("/v1/auth/send-otp", json={"email": "volunteer@example.org"})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0


class TestLocalTokenBucket:
    """The in-process fallback used when Redis is absent."""

    @pytest.mark.asyncio
    async def test_bucket_allows_limit_then_refuses(self):
        runtime = get_runtime()
        assert runtime.cache is None

        results = [await check_rate_limit(runtime, "unit:key", 3, 60) for _ in range(4)]

        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert results[-1][2] >= 1

    @pytest.mark.asyncio
    async def test_zero_limit_disables_bucket(self):
        runtime = get_runtime()

        allowed, _, reset = await check_rate_limit(runtime, "unit:off", 0, 60)

        assert allowed
        assert reset == 0

    @pytest.mark.asyncio
    async def test_invalid_window_defaults(self):
        runtime = get_runtime()

        allowed, remaining, _ = await check_rate_limit(runtime, "unit:window", 2, 0)

        assert allowed
        assert remaining == 1
