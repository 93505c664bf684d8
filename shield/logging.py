from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Request id, echoed back as X-Request-ID and stamped on every log entry
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys are bearer material and never rendered
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")
# Values under these keys identify a person; enough is kept to tell them apart
_CONTACT_KEYS = ("email",)
_REDACTED = "[redacted]"

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def session_context(session_id: Optional[str]) -> Iterator[None]:
    """Tag every entry logged inside the block with ``session_id``."""
    if not session_id:
        yield
        return
    with structlog.contextvars.bound_contextvars(session_id=session_id):
        yield


def _mask_contact(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***" if len(value) > 4 else "***"
    return f"{local[:2]}***@{domain}"


def _stamp_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace credential values whole and mask contact details."""
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = _REDACTED
        elif any(marker in lower_key for marker in _CONTACT_KEYS) and isinstance(
            value, str
        ):
            event_dict[key] = _mask_contact(value)
    return event_dict


def build_processors(*, json_output: bool, development_mode: bool) -> list:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_correlation_id,
        _redact,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    return processors


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments come from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    structlog.configure(
        processors=build_processors(
            json_output=json_output, development_mode=development_mode
        ),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
