"""Tests for the error envelope format and request validation helpers.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from vaultsync.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from vaultsync.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    RegisterRequest,
    VaultUpdateRequest,
    _normalize_unicode,
    parse_request,
)
from vaultsync.service.errors import (
    AccountLocked,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    RefreshTokenRejected,
    ServerError,
    VaultVersionConflict,
)
from vaultsync.service.errors import ValidationError as ServiceValidationError


class TestErrorBody:
    def test_defaults(self):
        error = ErrorBody(code="unauthorized", message="Invalid token")
        assert error.details is None

    def test_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"field": "email", "message": "invalid email address"}],
        )
        assert error.details[0]["field"] == "email"

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")


class TestEnvelope:
    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_uses_only_valid_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_body(self):
        response = _error_response(409, "Version mismatch", {"current_version": 3}, headers={"X-A": "1"})
        body = json.loads(response.body)

        assert response.status_code == 409
        assert response.headers["X-A"] == "1"
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "Version mismatch",
            "details": {"current_version": 3},
        }


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_type,status,code",
        [
            (ServiceValidationError, 400, "validation_error"),
            (AuthenticationError, 401, "unauthorized"),
            (ForbiddenError, 403, "forbidden"),
            (NotFoundError, 404, "not_found"),
            (ConflictError, 409, "conflict"),
            (RateLimitedError, 429, "rate_limited"),
            (ServerError, 500, "server_error"),
        ],
    )
    def test_status_and_code(self, exc_type, status, code):
        exc = exc_type("boom")
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.message == "boom"

    def test_domain_errors_keep_their_http_mapping(self):
        locked = AccountLocked()
        rejected = RefreshTokenRejected("token_reuse")
        stale = VaultVersionConflict(2, 5)

        assert (locked.status_code, locked.error_code, locked.detail) == (403, "forbidden", {})
        assert (rejected.status_code, rejected.message) == (401, "Invalid refresh token")
        assert isinstance(stale, ConflictError)
        assert stale.detail == {"expected_version": 2, "current_version": 5}


class TestParseRequest:
    def _device(self):
        return {"name": "Laptop", "platform": "web", "device_identifier": "abc"}

    def test_valid_login(self):
        parsed, errors = parse_request(
            LoginRequest,
            {"email": " User@Example.com ", "auth_verifier": "v", "device": self._device()},
        )
        assert errors == []
        assert parsed.email == "user@example.com"

    def test_errors_name_fields(self):
        parsed, errors = parse_request(
            LoginRequest, {"email": "not-an-email", "device": {"platform": "toaster"}}
        )
        fields = {e["field"] for e in errors}

        assert parsed is None
        assert "email" in fields
        assert "auth_verifier" in fields
        assert "device.platform" in fields
        assert "device.name" in fields
        assert all(not e["message"].startswith("Value error") for e in errors)

    def test_non_object_body(self):
        parsed, errors = parse_request(LoginRequest, ["not", "an", "object"])
        assert parsed is None
        assert errors == [{"field": "body", "message": "request body must be a JSON object"}]

    def test_register_rejects_unknown_kdf_algorithm(self):
        _, errors = parse_request(
            RegisterRequest,
            {
                "email": "a@example.com",
                "auth_verifier": "v",
                "kdf": {"algorithm": "md5", "salt": "s", "memory": 1, "iterations": 1, "parallelism": 1},
                "device": self._device(),
            },
        )
        assert [e["field"] for e in errors] == ["kdf.algorithm"]

    def test_vault_update_requires_positive_version(self):
        _, errors = parse_request(
            VaultUpdateRequest,
            {
                "blob": "b",
                "encryption": {"algorithm": "aes-256-gcm", "iv": "i", "auth_tag": "t"},
                "expected_version": 0,
                "checksum": "c",
            },
        )
        assert [e["field"] for e in errors] == ["expected_version"]


def test_normalize_unicode_strips_invisible_characters():
    assert _normalize_unicode("a\u200bb\u202ec") == "abc"
    assert _normalize_unicode("\uff41") == "a"
