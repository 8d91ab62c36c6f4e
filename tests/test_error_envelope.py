"""Tests for the JSON error body and the error-to-status mapping."""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore import app as app_module
from authcore.api.error_handling import _error_code_for_status, _error_response
from authcore.api.schemas import ErrorBody
from authcore.service.errors import (
    ChallengeExpiredError,
    ConflictError,
    CooldownActiveError,
    InvalidCodeError,
    InvalidCredentialsError,
    NoCredentialsError,
    NotRequestedError,
    ServerError,
    SessionExpiredError,
    SessionInvalidatedError,
    SessionRevokedError,
    UpstreamUnavailableError,
    ValidationError as ServiceValidationError,
)
from authcore.storage.errors import StorageUnavailable


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        """ErrorBody carries message and code, details default to None."""
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None
        assert error.request_id

    def test_unknown_code_rejected(self):
        """Codes outside the stable set are refused."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_error_response_shape(self):
        """_error_response renders message, code, details and request_id."""
        response = _error_response(429, "slow down", {"retry_after": 5})
        assert response.status_code == 429
        assert b'"code":"cooldown_active"' in response.body
        assert b'"retry_after":5' in response.body

    def test_unmapped_status_is_internal(self):
        assert _error_code_for_status(418) == "internal"


class TestServiceErrorTaxonomy:
    """Each domain error carries its HTTP status and stable code."""

    @pytest.mark.parametrize(
        "error, status, code",
        [
            (ServiceValidationError("bad"), 400, "validation_error"),
            (ConflictError("dup"), 400, "conflict"),
            (NoCredentialsError(), 401, "no_credentials"),
            (InvalidCredentialsError(), 401, "invalid_credentials"),
            (SessionExpiredError(), 401, "session_expired"),
            (SessionRevokedError(), 401, "session_revoked"),
            (SessionInvalidatedError(), 401, "session_invalidated"),
            (NotRequestedError(), 400, "not_requested"),
            (ChallengeExpiredError(), 400, "expired"),
            (InvalidCodeError(), 400, "invalid_code"),
            (CooldownActiveError(30), 429, "cooldown_active"),
            (UpstreamUnavailableError(), 503, "upstream_unavailable"),
            (ServerError("boom"), 500, "internal"),
        ],
    )
    def test_status_and_code(self, error, status, code):
        assert error.status_code == status
        assert error.error_code == code

    def test_only_dead_sessions_clear_cookies(self):
        assert SessionRevokedError.clear_credentials
        assert SessionInvalidatedError.clear_credentials
        assert not SessionExpiredError.clear_credentials
        assert not InvalidCredentialsError.clear_credentials

    def test_cooldown_never_reports_zero(self):
        assert CooldownActiveError(0).retry_after == 1


class TestHandlers:
    """Tests for the registered exception handlers."""

    def test_unknown_route_is_not_found(self):
        client = TestClient(app_module.app)

        response = client.get("/auth/does-not-exist")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_request_id_is_echoed(self):
        client = TestClient(app_module.app)

        response = client.get("/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_validation_details_omit_input(self):
        """Validation errors never echo submitted values back."""
        client = TestClient(app_module.app)

        response = client.post(
            "/auth/login", json={"email": "not-an-email", "password": "hunter2-secret"}
        )

        assert response.status_code == 400
        assert "hunter2-secret" not in response.text
        for detail in response.json()["details"]:
            assert set(detail) == {"loc", "msg", "type"}

    def test_storage_outage_is_503(self, reset_runtime_state, monkeypatch):
        def unavailable(email):
            raise StorageUnavailable("pool exhausted", backend="postgres")

        monkeypatch.setattr(reset_runtime_state.store, "get_user_by_email", unavailable)
        client = TestClient(app_module.app)

        response = client.post(
            "/auth/login", json={"email": "a@x.com", "password": "secret1"}
        )

        assert response.status_code == 503
        assert response.json()["code"] == "upstream_unavailable"
        assert "pool exhausted" not in response.text

    def test_unexpected_error_is_generic_500(self, reset_runtime_state, monkeypatch):
        def explode(email):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(reset_runtime_state.store, "get_user_by_email", explode)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post(
            "/auth/login", json={"email": "a@x.com", "password": "secret1"}
        )

        assert response.status_code == 500
        assert response.json()["code"] == "internal"
        assert "hunter2" not in response.text

    def test_auth_responses_are_not_cached(self):
        client = TestClient(app_module.app)

        response = client.get("/auth/me")

        assert "no-store" in response.headers["Cache-Control"]


class TestHealth:
    def test_healthz_with_memory_store(self):
        client = TestClient(app_module.app)

        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
