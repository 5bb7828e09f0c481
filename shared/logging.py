"""
Shared logging configuration for the cached requestor.

Every pipeline log line carries the request id and, once computed, the request
fingerprint, so the lines of one request (and of every request collapsed
behind the same lock) can be correlated.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
fingerprint_var: ContextVar[Optional[str]] = ContextVar('fingerprint', default=None)


def configure_logging(service_name: str = "requestor", log_level: str = "info") -> None:
    """Configure structured JSON logging."""
    level = getattr(logging, log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.getLogger(service_name).setLevel(level)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive the service from the logger name, e.g. requestor.cache.redis -> requestor."""
    logger_name = event_dict.get("logger", "")
    if logger_name:
        event_dict["service"] = logger_name.split(".")[0]
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request id and fingerprint to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    fingerprint = fingerprint_var.get()
    if fingerprint:
        event_dict["fingerprint"] = fingerprint

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_fingerprint(fingerprint: Optional[str]) -> None:
    fingerprint_var.set(fingerprint)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    fingerprint_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
