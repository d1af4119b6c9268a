"""Request correlation ID logging context.

Provides a request_id-aware logger that attaches a correlation ID to every
log message, so one booking, status push or change request can be traced
through the ledger, state machine and notification fan-out.

Usage:
    from asms.logging_context import get_request_logger, request_context

    logger = get_request_logger(__name__)
    with request_context("REQ-abc123"):
        logger.info("Booking received")  # -> [REQ-abc123] Booking received
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

_request_id: ContextVar[str] = ContextVar("request_id", default="-")


def set_request_id(request_id: str) -> None:
    """Set the correlation ID for the current context."""
    _request_id.set(request_id)


def get_request_id() -> str:
    """Retrieve the current correlation ID."""
    return _request_id.get()


@contextmanager
def request_context(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of the block, then restore the previous one."""
    rid = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
    token = _request_id.set(rid)
    try:
        yield rid
    finally:
        _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    """Injects request_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        return True


def get_request_logger(name: str) -> logging.Logger:
    """Return a logger with the RequestIdFilter attached.

    The filter adds ``request_id`` to each record so formatters can
    include ``%(request_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, RequestIdFilter) for f in logger.filters):
        logger.addFilter(RequestIdFilter())
    return logger
