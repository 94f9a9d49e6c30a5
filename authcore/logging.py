from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for per-request tracing across login/refresh/logout calls
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = ("password", "secret", "token", "authorization", "email")
# Identifier fields that are safe to log verbatim even though they contain "token"
_PII_ALLOWED_KEYS = frozenset({"token_id", "revoked_token_id", "jti"})
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation ID (generated when omitted) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like and email values, keeping two chars at each end."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _PII_ALLOWED_KEYS or not isinstance(value, str):
            continue
        if len(value) > 4 and any(pii in lower_key for pii in _PII_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """(Re)configure structlog; unset arguments fall back to the environment.

    LOG_LEVEL picks the threshold, LOG_JSON (default on) selects JSON lines and
    LOG_DEV_MODE forces the coloured console renderer.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
