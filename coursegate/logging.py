from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


# substrings of event keys whose values are credentials and are never logged
_SECRET_KEY_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "backup_code",
    "invite_code",
)
_EMAIL_KEY_FRAGMENTS = ("email",)


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:1] + "***"
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Blank out credentials and mask email addresses down to their domain.

    Login, recovery and invite paths carry passwords, backup codes, reset and
    invite tokens as keyword context; none of them may reach the log sink.
    """
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if not isinstance(value, str) or not value:
            continue
        if any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS):
            event_dict[key] = "***"
        elif any(fragment in lowered for fragment in _EMAIL_KEY_FRAGMENTS):
            event_dict[key] = _mask_email(value)
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
    """Configure structlog; unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not development_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)(password|secret|token|key|credential|code)\s*[:=]\s*\S+"),
    re.compile(r"(?i)(postgres(ql)?|redis)://\S+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]
_MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, paths and credentials from an error message.

    Only used when ``EXPOSE_ERROR_DETAILS`` lets exception text reach a client.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_MESSAGE_LENGTH:
        error = error[: _MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return error
