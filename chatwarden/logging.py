from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "chatwarden"

_request_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Client-supplied request ids end up in every log line of the request
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Keys whose values are credentials or shown-once material: never logged, not even partially
_SECRET_KEY_PARTS = (
    "token",
    "secret",
    "password",
    "authorization",
    "api_key",
    "license_key",
    "licensekey",
)
_EMAIL_KEY_PARTS = ("email",)

# Shapes that may leak through free-text fields such as ``error`` or ``message``
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_LICENSE_KEY_RE = re.compile(r"\b[A-Z2-7]{8}(?:-[A-Z2-7]{8}){3}\b")

REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, generating one if the caller's is unusable."""
    if not correlation_id or not _REQUEST_ID_RE.match(correlation_id):
        correlation_id = uuid.uuid4().hex
    _request_id.set(correlation_id)
    return correlation_id


def _add_service_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    request_id = _request_id.get()
    if request_id:
        event_dict["correlation_id"] = request_id
    return event_dict


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def scrub_text(value: str) -> str:
    value = _JWT_RE.sub(REDACTED, value)
    return _LICENSE_KEY_RE.sub(REDACTED, value)


def redact_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip identity tokens, license keys and secrets; mask emails to their domain."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(part in lowered for part in _SECRET_KEY_PARTS):
            if value is not None and not isinstance(value, (bool, int, float)):
                event_dict[key] = REDACTED
        elif any(part in lowered for part in _EMAIL_KEY_PARTS):
            if isinstance(value, str):
                event_dict[key] = mask_email(value)
        elif isinstance(value, str):
            event_dict[key] = scrub_text(value)
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments come from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    Redaction runs before rendering, so console and JSON output are scrubbed alike.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service_context,
        redact_event,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
