"""Tests for the error envelope format and error handling.

These tests verify that error responses conform to the stable API envelope format:
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

from airwave.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from airwave.api.schemas import Envelope, ErrorBody
from airwave.config import reset_settings_cache
from airwave.service.errors import (
    AuthenticationRequired,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    PermissionDenied,
    ResourceNotFound,
    ServerError,
    TokenExpired,
)
from airwave.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="invalid_token", message="Invalid token")
        assert error.code == "invalid_token"
        assert error.message == "Invalid token"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="unauthorized", message="Old-style code")

    def test_error_body_missing_message_raises(self):
        """ErrorBody without message raises ValidationError."""
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_request_id_auto_generated(self):
        """Envelope auto-generates request_id if not provided."""
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        """Envelope rejects invalid status values."""
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "authentication_required"
        assert _error_code_for_status(403) == "permission_denied"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(500) == "server_error"

    def test_unknown_statuses(self):
        assert _error_code_for_status(405) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_mapped_codes_are_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorTaxonomy:
    """Credential problems are 401, permission and CSRF failures are 403."""

    @pytest.mark.parametrize(
        "exc_type, status, code",
        [
            (AuthenticationRequired, 401, "authentication_required"),
            (InvalidCredentials, 401, "invalid_credentials"),
            (InvalidToken, 401, "invalid_token"),
            (TokenExpired, 401, "token_expired"),
            (PermissionDenied, 403, "permission_denied"),
            (Forbidden, 403, "invalid_csrf_token"),
            (ResourceNotFound, 404, "not_found"),
            (ServerError, 500, "server_error"),
        ],
    )
    def test_status_and_code(self, exc_type, status, code):
        exc = exc_type()

        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.message == exc_type.public_message


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "authentication_required"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_error_response_list_details(self):
        response = _error_response(400, "Multiple errors", details=[{"field": "a"}])

        data = json.loads(response.body.decode())
        assert data["error"]["details"] == [{"field": "a"}]
        assert "WWW-Authenticate" not in response.headers


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/denied")
    async def denied():
        raise PermissionDenied("Missing asset:delete", detail={"required": ["asset:delete"]})

    @app.get("/expired")
    async def expired():
        raise TokenExpired("Token has expired", detail={"expired_at": 1})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password=hunter2 leaked")

    return app


@pytest.fixture
def error_client():
    return TestClient(_build_app(), raise_server_exceptions=False)


class TestDevelopmentDetails:
    """Outside production the real message and details are returned."""

    def test_service_error_details(self, error_client):
        response = error_client.get("/denied")

        body = response.json()
        assert response.status_code == 403
        assert body["error"]["message"] == "Missing asset:delete"
        assert body["error"]["details"] == {"required": ["asset:delete"]}

    def test_constraint_violation_is_conflict(self, error_client):
        response = error_client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_unhandled_exception_includes_traceback(self, error_client):
        response = error_client.get("/boom")

        body = response.json()
        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert body["error"]["details"]["error_type"] == "RuntimeError"
        assert body["error"]["details"]["traceback"]

    def test_unknown_route(self, error_client):
        response = error_client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestProductionMessages:
    """In production clients only see generic messages."""

    @pytest.fixture(autouse=True)
    def production_env(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_settings_cache()
        yield
        monkeypatch.delenv("APP_ENV")
        reset_settings_cache()

    def test_service_error_is_generic(self, error_client):
        response = error_client.get("/denied")

        body = response.json()
        assert response.status_code == 403
        assert body["error"]["message"] == PermissionDenied.public_message
        assert body["error"]["details"] is None

    def test_expired_keeps_code(self, error_client):
        response = error_client.get("/expired")

        body = response.json()
        assert body["error"]["code"] == "token_expired"
        assert body["error"]["message"] == TokenExpired.public_message
        assert body["error"]["details"] is None

    def test_unhandled_exception_hides_internals(self, error_client):
        response = error_client.get("/boom")

        body = response.json()
        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert body["error"]["message"] == ServerError.public_message
        assert body["error"]["details"] is None
