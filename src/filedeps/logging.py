"""Structured logging configuration for filedeps."""

import logging
import sys
import uuid
from typing import Any, Dict

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, reset_contextvars


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output and request ID tracking.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, stream=sys.stderr, format="%(message)s")

    structlog.configure(
        processors=[
            _add_request_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request_id to log event if available in context."""
    context = get_contextvars()
    if "request_id" in context:
        event_dict["request_id"] = context["request_id"]

    return event_dict


def get_logger(name: str) -> Any:
    """Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())


class RequestContext:
    """Bind a request ID, plus any extra fields, to every log event in scope.

    The API binds one per HTTP request; the CLI binds one per command run.
    """

    def __init__(self, request_id: str | None = None, **fields: Any):
        self.request_id = request_id or generate_request_id()
        self.fields = fields
        self.tokens = None

    def __enter__(self):
        self.tokens = bind_contextvars(request_id=self.request_id, **self.fields)
        return self.request_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.tokens:
            reset_contextvars(**self.tokens)
