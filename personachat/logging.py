from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, MutableMapping, Optional

import structlog

# Set by the request middleware; read by the log processor and error envelope
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _bind_request_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = _request_id.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


# Any key containing one of these fragments is masked before rendering
_MASKED_FRAGMENTS = ("password", "secret", "token", "authorization", "email")
# Derived values that only look sensitive by name
_UNMASKED_KEYS = frozenset({"email_hash", "token_prefix", "token_type", "tokens_removed"})


def _mask_value(key: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if "email" in key:
        return redact_email(value)
    # Credentials are never partially shown
    return "[redacted]" if value else value


def _mask_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in _UNMASKED_KEYS:
            continue
        if any(fragment in lowered for fragment in _MASKED_FRAGMENTS):
            event_dict[key] = _mask_value(lowered, event_dict[key])
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``dev_mode`` (or ``json_output=False``) switches
    to the colored console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
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
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_email(email: str) -> str:
    """Stable, non-reversible identifier for an address in log lines."""
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()[:16]


def redact_email(email: str) -> str:
    """Mask an address for display, e.g. ``jo***@example.com``."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:2] if len(local) > 2 else local[:1]}***@{domain}"


_ERROR_SCRUBBERS: Dict[str, re.Pattern] = {
    # filesystem locations, e.g. the store path in an OSError
    "path": re.compile(r"(?:/[\w.-]+){2,}"),
    # bearer values and JWT-shaped strings
    "bearer": re.compile(r"(?i)bearer\s+\S+"),
    "jwt": re.compile(r"[\w-]{10,}\.[\w-]{10,}\.[\w-]{10,}"),
    "assignment": re.compile(r"(?i)(password|secret|token)\s*[:=]\s*\S+"),
    "address": re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"),
}


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub paths, credentials and addresses from an exception message.

    The result is capped at 300 characters.
    """
    if not error:
        return "An error occurred"
    for pattern in _ERROR_SCRUBBERS.values():
        error = pattern.sub(replacement, error)
    return error if len(error) <= 300 else error[:297] + "..."
