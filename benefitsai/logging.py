from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

SERVICE_NAME = "benefitsai"
SECURITY_CHANNEL = "security"

_CORRELATION_ID_RE = re.compile(r"[A-Za-z0-9._:-]{1,128}")
# Compact JWS: ID tokens and session cookies
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]{4,}\.[A-Za-z0-9_-]{4,}\.[A-Za-z0-9_-]*")
_SENSITIVE_KEYS = ("token", "secret", "cookie", "authorization", "password", "email", "credential")
_UNMASKED_KEYS = frozenset({"event", "token_state", "channel"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context.

    Client-supplied ids that are too long or contain unexpected characters
    are replaced so they cannot forge log lines.
    """
    if correlation_id and not _CORRELATION_ID_RE.fullmatch(correlation_id):
        correlation_id = None
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(**fields: Any) -> None:
    """Attach fields (method, path, user_id) to every log line of this request."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
    correlation_id_var.set(None)


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _add_service_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and PII fields, and any token-shaped value in free text.

    Keys are matched by substring (``refresh_token``, ``session_cookie``,
    ``email``); string values anywhere else are scanned for compact JWTs so an
    ID token pasted into an error message never reaches a sink verbatim.
    """
    for key, value in list(event_dict.items()):
        if key in _UNMASKED_KEYS or not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            event_dict[key] = _mask(value)
        elif "eyJ" in value:
            event_dict[key] = _JWT_RE.sub("[jwt]", value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines in production; colored console output when ``development_mode``
    is set or JSON is turned off.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service_context,
        mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
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


def _env_flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return env.get(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag(os.environ, "LOG_JSON", "true"),
    development_mode=_env_flag(os.environ, "LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def get_security_logger() -> structlog.stdlib.BoundLogger:
    """Logger for security and audit events.

    Everything emitted here carries ``channel="security"`` so log shippers can
    route token-reuse alerts and access denials to a separate sink.
    """
    return structlog.get_logger(SECURITY_CHANNEL).bind(channel=SECURITY_CHANNEL)


_ERROR_TEXT_SCRUBBERS = [
    re.compile(r"(?i)(redis|rediss|postgres(?:ql)?)://\S+"),
    re.compile(r"(?i)(password|secret|token|api.?key|credential)\s*[:=]\s*\S+"),
    _JWT_RE,
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub DSNs, credentials, tokens and file paths from exception text."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _ERROR_TEXT_SCRUBBERS:
        result = pattern.sub(replacement, result)
    if len(result) > 200:
        result = result[:197] + "..."
    return result
