from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation id for the request currently being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_PII_KEYS = ("password", "secret", "token", "authorization", "email")


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like values; ``*_hash`` keys are already one-way."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key.endswith("_hash"):
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structlog from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.

    JSON lines by default; ``LOG_DEV_MODE`` or ``LOG_JSON=false`` switch to the
    console renderer.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
    ]
    if _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"):
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def email_digest(email: str) -> str:
    """Stable, non-reversible identifier for an email address in logs."""
    return hashlib.sha256(email.encode()).hexdigest()[:16]


_SENSITIVE_PATTERNS = [
    # Compact JWTs, with or without a Bearer prefix
    re.compile(r"(?i)\bbearer\s+\S+"),
    re.compile(r"\beyJ[\w-]*\.[\w-]*\.[\w-]*"),
    re.compile(r"\$argon2(?:id|i|d)\$\S+"),
    re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)\b(?:app_user|user_session)\b"),
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp)/\S+"),
    re.compile(r"(?i)(?:password|secret|token|credential)\s*[:=]\s*\S+"),
]


def sanitize_error_message(error: str) -> str:
    """Strip tokens, password hashes, SQL and paths from an error message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub("[redacted]", result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
