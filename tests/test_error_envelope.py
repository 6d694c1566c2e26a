"""Tests for the error envelope format and exception handlers.

Error responses share one envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from reliefgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from reliefgate.api.schemas import Envelope, ErrorBody
from reliefgate.service.errors import (
    AuthenticationError,
    DeliveryFailedError,
    RateLimitedError,
    ValidationError as ServiceValidationError,
)
from reliefgate.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")

        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests", details={"retry_after": 60}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_a_valid_envelope_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)

        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None
        assert data["status"] == "error"

    def test_error_response_headers(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "30"})

        assert response.headers["Retry-After"] == "30"


@pytest.fixture
def handler_client():
    """A throwaway app exercising each registered handler."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("Invalid or expired verification code")

    @app.get("/rate-limited")
    async def rate_limited():
        raise RateLimitedError("Too many attempts. Please try again later.", retry_after=120)

    @app.get("/invalid")
    async def invalid():
        raise ServiceValidationError("bad input", detail={"errors": ["too short"]})

    @app.get("/delivery")
    async def delivery():
        raise DeliveryFailedError("Unable to deliver email. Please try again later.")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("pool exhausted")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_authentication_error(self, handler_client):
        response = handler_client.get("/unauthorized")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Invalid or expired verification code",
            "details": None,
        }

    def test_rate_limited_sets_retry_after(self, handler_client):
        response = handler_client.get("/rate-limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert response.json()["error"]["details"] == {"retry_after": 120}

    def test_validation_error_details(self, handler_client):
        response = handler_client.get("/invalid")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"errors": ["too short"]}

    def test_delivery_failure_is_bad_gateway(self, handler_client):
        response = handler_client.get("/delivery")

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "server_error"

    def test_constraint_violation_is_conflict(self, handler_client):
        response = handler_client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_store_unavailable_hides_detail(self, handler_client):
        response = handler_client.get("/store-down")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Service temporarily unavailable"

    def test_uncaught_exception(self, handler_client):
        response = handler_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "unexpected" not in response.text
