"""Tests for mapping auth-core exceptions to the stable error envelope.

Envelope shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": null, "retryable": false},
    "request_id": "<uuid>"
}
"""

import pytest
from pydantic import ValidationError

from authcore.api.error_handling import error_envelope
from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import _redact_pii, correlation_id_var, set_correlation_id
from authcore.service.errors import (
    AlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    StorageUnavailableError,
    TokenGenerationError,
    UnauthorizedError,
    is_unauthorized,
)
from authcore.service.tokens import ExpiredTokenError, InvalidSignatureError


class TestErrorBody:
    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        assert Envelope(status="ok").request_id


class TestUnauthorizedCollapse:
    @pytest.mark.parametrize(
        "exc",
        [
            InvalidCredentialsError("invalid credentials"),
            UnauthorizedError("refresh token expired", detail={"reason": "expired"}),
            UnauthorizedError("access token revoked", detail={"reason": "revoked"}),
            ExpiredTokenError("access token expired"),
            InvalidSignatureError("bad signature"),
        ],
    )
    def test_every_credential_failure_looks_the_same(self, exc):
        """No internal reason leaks into the caller-facing body."""
        assert is_unauthorized(exc)
        status, envelope = error_envelope(exc)
        assert status == 401
        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.error.message == "unauthorized"
        assert envelope.error.details is None
        assert envelope.error.retryable is False


class TestSystemFaults:
    def test_storage_unavailable_is_retryable_503(self):
        status, envelope = error_envelope(
            StorageUnavailableError("get_refresh_token timed out", detail={"operation": "x"})
        )
        assert status == 503
        assert envelope.error.code == "unavailable"
        assert envelope.error.retryable is True
        assert "timed out" not in envelope.error.message

    @pytest.mark.parametrize(
        "exc", [TokenGenerationError("signing failed"), ServerError("hash unreadable")]
    )
    def test_internal_faults_hide_detail(self, exc):
        assert not is_unauthorized(exc)
        status, envelope = error_envelope(exc)
        assert status == 500
        assert envelope.error.code == "server_error"
        assert envelope.error.message == "an unexpected error occurred"
        assert envelope.error.retryable is False

    def test_unexpected_exception_is_server_error(self):
        status, envelope = error_envelope(RuntimeError("boom"))
        assert status == 500
        assert envelope.error.code == "server_error"
        assert "boom" not in envelope.error.message


class TestClientErrors:
    def test_conflict(self):
        status, envelope = error_envelope(AlreadyExistsError("user already exists"))
        assert status == 409
        assert envelope.error.code == "conflict"
        assert envelope.error.message == "user already exists"

    def test_not_found(self):
        status, envelope = error_envelope(NotFoundError("user not found"))
        assert status == 404
        assert envelope.error.code == "not_found"


def test_request_id_follows_correlation_id():
    token = correlation_id_var.set(None)
    try:
        cid = set_correlation_id("req-123")
        _, envelope = error_envelope(UnauthorizedError("nope"))
        assert cid == "req-123"
        assert envelope.request_id == "req-123"
    finally:
        correlation_id_var.reset(token)


def test_log_redaction_keeps_token_ids():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_succeeded",
            "email": "someone@example.com",
            "refresh_token": "abcdefghijklmnop",
            "token_id": "0b8f3c1e-aaaa-bbbb-cccc-123456789abc",
        },
    )
    assert event["email"] == "so***om"
    assert event["refresh_token"] == "ab***op"
    assert event["token_id"] == "0b8f3c1e-aaaa-bbbb-cccc-123456789abc"
