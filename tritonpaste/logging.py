from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Event keys whose values are credentials: bearer tokens, OAuth codes and
# client secrets. Their values never reach the log sink.
_SENSITIVE_KEY_MARKERS = ("token", "secret", "authorization", "password", "code")
# Keys that merely contain a marker but carry no credential
_SAFE_KEYS = {"status_code", "error_code"}
_MASK = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, minting one when the client sent none."""

    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in _SAFE_KEYS:
        return False
    return any(marker in lowered for marker in _SENSITIVE_KEY_MARKERS)


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or value is None or not _is_sensitive(key):
            continue
        event_dict[key] = _MASK
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the process.

    Unset arguments come from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    JSON lines are the default; dev mode switches to the coloured console
    renderer.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
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
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
