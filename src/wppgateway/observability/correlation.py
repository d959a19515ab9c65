"""Correlation ID management for request tracing.

The id lives in a ContextVar. Work handed to other threads (timer tasks,
the group prefetch pool) does not inherit it; wrap such work with
bound_correlation_id() or use copy_context().
"""

import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Incoming ids are echoed into logs and responses; keep them short and plain
_VALID_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def accept_correlation_id(value: str | None) -> str:
    """Return the caller's id if well formed, else a fresh one."""
    if value and _VALID_ID.match(value):
        return value
    return generate_correlation_id()


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


@contextmanager
def bound_correlation_id(cid: str | None) -> Iterator[str]:
    """Bind `cid` (or a new id) for the duration of the block."""
    value = cid or generate_correlation_id()
    token = set_correlation_id(value)
    try:
        yield value
    finally:
        reset_correlation_id(token)
