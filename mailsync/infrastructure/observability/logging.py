"""
Structured logging setup for the mailbox sync engine.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)


def _add_service_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry with the service name."""
    event_dict.setdefault("service", "mailsync")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


WORKER_CONTEXT_KEYS = ("worker_id", "chunk_id", "job_id", "tenant_id")


def bind_worker_context(worker_id: str, **extra: Any) -> None:
    """Bind worker identity to every log line emitted in this task."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id, **extra)


def clear_worker_context() -> None:
    # request_id, if any, belongs to the enclosing request and stays bound
    structlog.contextvars.unbind_contextvars(*WORKER_CONTEXT_KEYS)


@contextmanager
def request_log_context(request_id: str) -> Iterator[None]:
    """Bind request_id for the duration of one HTTP request."""
    with structlog.contextvars.bound_contextvars(request_id=request_id):
        yield
