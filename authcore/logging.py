from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Request id carried into every log line emitted while serving that request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values must never reach a log sink verbatim
_SECRET_KEYS = (
    "password",
    "secret",
    "token",
    "signature",
    "csrf",
    "authorization",
    "cookie",
)
# Identifiers that contain a secret-looking substring but are safe to log
_SAFE_KEYS = frozenset({"token_id", "token_ttl_seconds", "password_algorithm"})
_MASK = "***"
_VISIBLE_PREFIX = 2

EventDict = Dict[str, Any]


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in _SAFE_KEYS:
        return False
    return any(marker in lowered for marker in _SECRET_KEYS)


def _mask(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bytes):
        return f"{value[:_VISIBLE_PREFIX].hex()}{_MASK}" if len(value) > 8 else _MASK
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:_VISIBLE_PREFIX]}{_MASK}"
    return _MASK


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credentials, tokens and signatures before rendering.

    Long values keep two leading characters (hex for bytes) so operators can
    correlate entries without recovering the secret.
    """
    for key in [k for k in event_dict if _is_sensitive(k)]:
        event_dict[key] = _mask(event_dict[key])
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for authcore.

    Console rendering is used in development mode or when JSON is disabled;
    redaction always runs before any renderer.
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output and not development_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))

    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
