from __future__ import annotations

from typing import Optional

from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import get_correlation_id, get_logger
from authcore.service.errors import ServiceError, is_unauthorized

logger = get_logger(__name__)

_GENERIC_MESSAGES = {
    "unauthorized": "unauthorized",
    "server_error": "an unexpected error occurred",
    "unavailable": "service temporarily unavailable, retry later",
}


def _request_id() -> Optional[str]:
    return get_correlation_id()


def _envelope(code: str, message: str, *, details=None, retryable: bool = False) -> Envelope:
    body = ErrorBody(code=code, message=message, details=details, retryable=retryable)
    request_id = _request_id()
    if request_id:
        return Envelope(status="error", error=body, request_id=request_id)
    return Envelope(status="error", error=body)


def error_envelope(exc: BaseException) -> tuple[int, Envelope]:
    """Map an auth-core exception to ``(status_code, envelope)`` for callers.

    Credential and token failures collapse into one generic "unauthorized"
    body so callers cannot tell a wrong email from a wrong password or a
    revoked token from an expired one. System faults are logged in full and
    returned without internal detail.
    """
    if is_unauthorized(exc):
        logger.info(
            "auth_rejected",
            error_type=type(exc).__name__,
            reason=str(exc),
        )
        return 401, _envelope("unauthorized", _GENERIC_MESSAGES["unauthorized"])

    if isinstance(exc, ServiceError):
        if exc.status_code >= 500:
            logger.error(
                "auth_system_fault",
                error_type=type(exc).__name__,
                error_code=exc.error_code,
                message=exc.message,
                detail=exc.detail,
                cause=repr(exc.__cause__) if exc.__cause__ else None,
            )
            return exc.status_code, _envelope(
                exc.error_code,
                _GENERIC_MESSAGES.get(exc.error_code, _GENERIC_MESSAGES["server_error"]),
                retryable=exc.retryable,
            )
        logger.warning(
            "auth_client_error",
            error_type=type(exc).__name__,
            error_code=exc.error_code,
            message=exc.message,
        )
        return exc.status_code, _envelope(exc.error_code, exc.message)

    logger.error(
        "auth_unhandled_exception",
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc,
    )
    return 500, _envelope("server_error", _GENERIC_MESSAGES["server_error"])
