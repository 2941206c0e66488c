"""
Structured logging and correlation ids

Tenet #2: Zero PII in logs - subject ids are hashed before logging
Tenet #10: Observable Systems - one correlation id per turn, forwarded
to every external system
"""

from typing import Optional
import hashlib
import logging
import uuid

import structlog


CORRELATION_HEADER = "X-Correlation-Id"

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """
    Configure structlog for the process.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        fmt: "json" for machine-readable output, anything else for console
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LOG_LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind (or generate) the correlation id for the current context."""
    correlation_id = correlation_id or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current context, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars("correlation_id")


def hash_identifier(value: str) -> str:
    """Hash an identifier for logging."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]
