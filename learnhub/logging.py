from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_correlation_id(request_id: Optional[str] = None) -> str:
    """Bind the inbound ``X-Request-ID`` (or a fresh uuid4) to the current context."""
    value = request_id or str(uuid.uuid4())
    request_id_var.set(value)
    return value


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def hash_email(email: str) -> str:
    """Stable, non-reversible email identifier for log lines."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


_SECRET_MARKERS = ("password", "secret", "token", "otp", "authorization")
_ALREADY_SAFE = ("_hash", "_masked")


def _scrub_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Hash email fields and blank out credentials before rendering."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered.endswith(_ALREADY_SAFE) or not isinstance(value, str):
            continue
        if "email" in lowered:
            event_dict[key] = hash_email(value)
        elif any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = "[redacted]"
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``console`` switches to the coloured dev renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_id,
        _scrub_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_env_flag("LOG_DEV_MODE", False) or not _env_flag("LOG_JSON", True),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_FRAGMENTS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(psycopg|postgres|redis)[\w.]*error",
        r"(?i)connection\s+\S*\s*(refused|reset|timed out|failed)",
        r"(?:/[\w.-]+){2,}",
        r"(?i)(password|secret|token|otp|key)\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, paths and credential assignments from an error string; cap at 300 chars."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 300 else error[:297] + "..."
