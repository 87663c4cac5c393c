"""Structured logging setup with request and job context propagation"""

import contextvars
import hashlib
import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from uuid import uuid4

import structlog

request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
sweep_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "sweep_id", default=None
)


def hash_api_key(api_key: str) -> str:
    """
    Return a short, log-safe fingerprint of an API key.

    Args:
        api_key: The API key to fingerprint

    Returns:
        "sha256:" followed by the first 16 hex chars, or "empty"
    """
    if not api_key:
        return "empty"
    return f"sha256:{hashlib.sha256(api_key.encode()).hexdigest()[:16]}"


def add_trace_ids(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    structlog processor attaching the current request and sweep ids.

    Args:
        logger: The logger instance
        method_name: The logging method name
        event_dict: The event being logged

    Returns:
        The event dict, with request_id and sweep_id when set
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    sweep_id = sweep_id_var.get()
    if sweep_id:
        event_dict["sweep_id"] = sweep_id
    return event_dict


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structlog on top of the standard library logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "console")
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_trace_ids,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: Any
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger bound to the given module name.

    Args:
        name: Logger name, usually __name__

    Returns:
        A structlog bound logger
    """
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Store a request id in the current context.

    Args:
        request_id: Optional request ID, generated if not provided

    Returns:
        The request_id that was set
    """
    if request_id is None:
        request_id = f"req_{uuid4().hex[:12]}"
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    """
    Return the request id of the current context.

    Returns:
        The request id, or None outside a request
    """
    return request_id_var.get()


def clear_request_id() -> None:
    """Clear request_id from context variable"""
    request_id_var.set(None)


@contextmanager
def sweep_context(kind: str) -> Iterator[str]:
    """
    Scope a sweep id to one batch run so its log lines correlate.

    The previous value is restored on exit, so ids never leak into work the
    caller does after the sweep.

    Args:
        kind: Sweep kind used as the id prefix (e.g. "reconcile", "cleanup")

    Yields:
        The new sweep id
    """
    sweep_id = f"{kind}_{uuid4().hex[:10]}"
    token = sweep_id_var.set(sweep_id)
    try:
        yield sweep_id
    finally:
        sweep_id_var.reset(token)
