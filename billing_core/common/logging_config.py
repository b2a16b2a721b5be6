"""Structured JSON logging with automatic MSISDN/PII redaction.

Configures *structlog* to emit JSON lines and routes the standard-library
``logging`` records emitted by the stores and processors through the same
processor chain.  Every log event carries a correlation ID, service name,
environment tag, and ISO-8601 timestamp.  A dedicated processor replaces
values that look like subscriber numbers or e-mail addresses, as well as
any value stored under a known PII key, with ``[REDACTED]``.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

# --------------------------------------------------------------------------- #
# Correlation-ID context                                                       #
# --------------------------------------------------------------------------- #
_correlation_id_ctx: ContextVar[str | None] = ContextVar(
    "correlation_id",
    default=None,
)


def get_correlation_id() -> str:
    """Return the current correlation ID, creating one if absent."""
    cid = _correlation_id_ctx.get()
    if cid is None:
        cid = uuid.uuid4().hex
        _correlation_id_ctx.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Explicitly set the correlation ID (e.g. from an incoming header)."""
    _correlation_id_ctx.set(cid)


# --------------------------------------------------------------------------- #
# PII redaction processor                                                      #
# --------------------------------------------------------------------------- #
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# Nine or more digits, optionally space separated; dates and hex ids do not match.
_MSISDN_RE = re.compile(r"(?<!\w)\+?\d(?: ?\d){8,14}(?!\w)")
_PII_KEYS = frozenset(
    {
        "msisdn",
        "raw_msisdn",
        "normalized_msisdn",
        "phone",
        "phone_number",
        "mobile",
        "email",
        "user_email",
        "user_name",
        "name",
        "ip",
    }
)
_SAFE_KEYS = frozenset({"timestamp", "level", "logger", "correlation_id", "service", "environment"})
_REDACTED = "[REDACTED]"


def redact_pii(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that replaces PII values with ``[REDACTED]``."""
    for key, value in list(event_dict.items()):
        if key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if key.lower() in _PII_KEYS:
            event_dict[key] = _REDACTED
            continue
        if _EMAIL_RE.search(value):
            value = _EMAIL_RE.sub(_REDACTED, value)
        if _MSISDN_RE.search(value):
            value = _MSISDN_RE.sub(_REDACTED, value)
        event_dict[key] = value
    return event_dict


# --------------------------------------------------------------------------- #
# Injection processors                                                         #
# --------------------------------------------------------------------------- #
_service_name_ctx: ContextVar[str] = ContextVar("service_name", default="unknown")


def _inject_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add correlation_id, service_name, and environment to every event."""
    event_dict.setdefault("correlation_id", get_correlation_id())
    event_dict.setdefault("service", _service_name_ctx.get())
    event_dict.setdefault("environment", os.getenv("BILLING_ENV", "development"))
    return event_dict


# --------------------------------------------------------------------------- #
# Public setup function                                                        #
# --------------------------------------------------------------------------- #


def setup_logging(service_name: str, log_level: str = "INFO") -> structlog.stdlib.BoundLogger:
    """Configure structlog for JSON output with PII redaction.

    Parameters
    ----------
    service_name:
        Logical name of the process (e.g. ``"billing-api"``).
    log_level:
        Standard Python log level string.  Defaults to ``"INFO"``.

    Returns
    -------
    structlog.stdlib.BoundLogger
        A pre-configured logger instance ready for use.
    """
    _service_name_ctx.set(service_name)
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_context,
        redact_pii,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logging.basicConfig(handlers=[handler], level=level, force=True)

    logger: structlog.stdlib.BoundLogger = structlog.get_logger(service_name)
    logger.info("logging_initialised", log_level=log_level)
    return logger
