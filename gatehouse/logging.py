"""structlog setup shared by the app, services and scripts.

Events are emitted as ``logger.info("event_name", key=value)``. Every line
carries the request correlation id (also returned as ``X-Request-ID``), and
credential-looking fields are masked before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_MASKED_FIELDS = ("password", "secret", "token", "api_key", "authorization", "cookie", "email", "signature")
# Stripe keys, webhook secrets and GitHub tokens
_SECRET_VALUE = re.compile(r"\b(?:sk|rk|whsec|gh[opsu])_[A-Za-z0-9_]{6,}")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    _correlation_id.set(value)
    return value


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _with_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    correlation_id = _correlation_id.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(name in key.lower() for name in _MASKED_FIELDS):
            event_dict[key] = _mask(value)
        elif _SECRET_VALUE.search(value):
            event_dict[key] = _SECRET_VALUE.sub("[redacted]", value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    """(Re)configure structlog.

    JSON lines are the production format. ``dev_mode`` or ``json_output=False``
    switches to the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _with_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

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
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE = [
    re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)(?:password|secret|token|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)(?:/home|/var|/etc|/usr|/opt|/tmp)/\S+"),
    _SECRET_VALUE,
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]", limit: int = 300) -> str:
    """Strip SQL, filesystem paths and credentials from text echoed to clients."""
    if not error:
        return "An error occurred"
    for pattern in _CLIENT_UNSAFE:
        error = pattern.sub(replacement, error)
    if len(error) > limit:
        error = error[: limit - 3] + "..."
    return error
