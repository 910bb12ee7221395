from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request/session correlation id carried through structured logs
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings of log keys whose values must never be written verbatim.
# Access tokens for runtimes and the admin bearer token flow through provisioning logs.
_SECRET_KEY_MARKERS = ("token", "secret", "password", "api_key", "authorization")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask secret-looking values, keeping two characters at each end."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if not any(marker in lowered for marker in _SECRET_KEY_MARKERS):
            continue
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line when True
        development_mode: Force the colored console renderer
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_session_context(session_id: str, **extra: Any) -> None:
    """Attach a pairing session id to every log line of the running task."""
    structlog.contextvars.bind_contextvars(session_id=session_id, **extra)


# Fragments that must not leak through error messages returned to browsers
_SENSITIVE_MESSAGE_PATTERNS = [
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/[^\s]+"),
    re.compile(r"(?i)(password|secret|token|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
    re.compile(r"(?i)(postgres(?:ql)?|redis)://[^\s]+"),
]


def sanitize_error_message(error: Optional[str], *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials and connection strings from ``error``.

    Messages longer than 500 characters are truncated.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_MESSAGE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
