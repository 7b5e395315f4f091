"""Tests for the error envelope format and the registered exception handlers.

Every failure leaves the HTTP boundary shaped as:
{
    "status": "error",
    "error": {
        "code": "<generic code or AUTH_*>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import uuid

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from vibeauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
    register_request_id_middleware,
)
from vibeauth.api.schemas import Envelope, ErrorBody
from vibeauth.service.errors import (
    CodeRateLimitedError,
    InvalidCredentialsError,
    MagicLinkUsedError,
    NotFoundError,
    UserBannedError,
)
from vibeauth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_generic_codes_accepted(self):
        for code in _STATUS_TO_CODE.values():
            assert ErrorBody(code=code, message="x").code == code

    def test_auth_codes_accepted(self):
        error = ErrorBody(code="AUTH_CODE_EXPIRED", message="Code expired")
        assert error.code == "AUTH_CODE_EXPIRED"
        assert error.details is None

    @pytest.mark.parametrize("code", ["teapot", "auth_code_expired", "AUTH_", "AUTH_lower"])
    def test_unknown_codes_rejected(self, code):
        with pytest.raises(ValidationError):
            ErrorBody(code=code, message="nope")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok", data={"ok": True})
        second = Envelope(status="ok")
        uuid.UUID(first.request_id)
        assert first.request_id != second.request_id

    def test_status_is_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="failed")


class TestErrorResponse:
    def test_status_mapping(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(418) == "server_error"

    def test_explicit_code_wins(self):
        response = _error_response(400, "Code expired", code="AUTH_CODE_EXPIRED")
        assert response.status_code == 400
        assert b'"AUTH_CODE_EXPIRED"' in response.body

    def test_retry_after_only_on_429(self):
        assert _error_response(429, "slow down").headers["retry-after"] == "900"
        assert "retry-after" not in _error_response(400, "bad").headers


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)
    register_request_id_middleware(app)

    @app.get("/rate-limited")
    async def rate_limited():
        raise CodeRateLimitedError("Too many codes requested", detail={"limit": 3})

    @app.get("/used-link")
    async def used_link():
        raise MagicLinkUsedError("Magic link already used")

    @app.get("/banned")
    async def banned():
        raise UserBannedError("Account is banned")

    @app.get("/bad-password")
    async def bad_password():
        raise InvalidCredentialsError("Invalid email or password")

    @app.get("/missing-passkey")
    async def missing_passkey():
        raise NotFoundError("Passkey not found")

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("UNIQUE constraint failed", {"engine": "sqlite"})

    @app.get("/http")
    async def http_error():
        raise HTTPException(status_code=403, detail="nope")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database exploded")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "path, status, code",
        [
            ("/used-link", 400, "AUTH_MAGIC_LINK_USED"),
            ("/bad-password", 401, "AUTH_INVALID_CREDENTIALS"),
            ("/banned", 403, "AUTH_USER_BANNED"),
            ("/missing-passkey", 404, "not_found"),
            ("/duplicate", 409, "conflict"),
            ("/http", 403, "forbidden"),
        ],
    )
    def test_status_and_code(self, client, path, status, code):
        response = client.get(path)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["data"] is None
        uuid.UUID(body["request_id"])

    def test_rate_limit_sets_retry_after(self, client):
        response = client.get("/rate-limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"
        assert response.json()["error"] == {
            "code": "AUTH_RATE_LIMITED",
            "message": "Too many codes requested",
            "details": {"limit": 3},
        }

    def test_unhandled_exception_hides_message(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert "exploded" not in error["message"]


class TestRequestId:
    def test_client_request_id_is_echoed(self, client):
        response = client.get("/used-link", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_request_id_generated_when_absent(self, client):
        response = client.get("/banned")

        generated = response.headers["X-Request-ID"]
        uuid.UUID(generated)
        assert response.json()["request_id"] == generated
