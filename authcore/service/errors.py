from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-core exceptions surfaced to callers.

    Each class carries a stable ``error_code`` and the HTTP ``status_code`` a
    transport layer should use. ``retryable`` marks transient failures the
    caller may retry; the core itself never retries.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidCredentialsError(ServiceError):
    """Bad email or password; the two are never distinguished (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthorizedError(ServiceError):
    """Expired, mismatched or missing refresh token, or revoked access token (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """User or refresh record absent (404)."""
    status_code = 404
    error_code = "not_found"


class AlreadyExistsError(ServiceError):
    """Duplicate sign-up email (409)."""
    status_code = 409
    error_code = "conflict"


class TokenGenerationError(ServiceError):
    """Signing primitive failed; a system fault, not a user error (500)."""
    status_code = 500
    error_code = "server_error"


class ServerError(ServiceError):
    """Internal fault such as a corrupt stored password hash (500)."""
    status_code = 500
    error_code = "server_error"


class StorageUnavailableError(ServiceError):
    """Backing store timed out or is unreachable (503)."""
    status_code = 503
    error_code = "unavailable"
    retryable = True


def is_unauthorized(exc: BaseException) -> bool:
    """Return True when ``exc`` must surface to callers as a plain "unauthorized".

    Credential errors, refresh/revocation failures and every access-token
    verification failure fall in this class. Storage outages never do.
    """
    # Imported lazily: tokens imports this module for TokenGenerationError
    from authcore.service.tokens import TokenError

    return isinstance(exc, (InvalidCredentialsError, UnauthorizedError, TokenError))


__all__ = [
    "ServiceError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "NotFoundError",
    "AlreadyExistsError",
    "TokenGenerationError",
    "ServerError",
    "StorageUnavailableError",
    "is_unauthorized",
]
