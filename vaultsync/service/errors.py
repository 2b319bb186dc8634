from __future__ import annotations

from datetime import datetime
from typing import Optional, Union


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Union[dict, list]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input or a disallowed request shape (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials or an invalid, expired or revoked token (401)."""
    status_code = 401
    error_code = "unauthorized"


class RefreshTokenRejected(AuthenticationError):
    """A refresh token that cannot be rotated.

    Replays look the same to the caller as any other bad token; the reason is
    only recorded in the audit trail.
    """

    def __init__(self, reason: str = "invalid") -> None:
        super().__init__("Invalid refresh token")
        self.reason = reason


class ForbiddenError(ServiceError):
    """Locked account or an action the caller may not take (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLocked(ForbiddenError):
    def __init__(self, lockout_until: Optional[datetime] = None) -> None:
        super().__init__("Account is locked. Please try again later.")
        # kept off the response body
        self.lockout_until = lockout_until


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate resource or stale version (409)."""
    status_code = 409
    error_code = "conflict"


class VaultVersionConflict(ConflictError):
    """The client's ``expected_version`` no longer matches the stored vault."""

    def __init__(self, expected_version: int, current_version: int) -> None:
        super().__init__(
            f"Version mismatch: expected {expected_version}, current is {current_version}",
            detail={"expected_version": expected_version, "current_version": current_version},
        )
        self.expected_version = expected_version
        self.current_version = current_version


class RateLimitedError(ServiceError):
    """Token bucket exhausted (429); ``detail["retry_after"]`` feeds Retry-After."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "RefreshTokenRejected",
    "ForbiddenError",
    "AccountLocked",
    "NotFoundError",
    "ConflictError",
    "VaultVersionConflict",
    "RateLimitedError",
    "ServerError",
]
