"""Redaction helpers for safe logging. All external data must pass through these."""

import re
from typing import Any

# Patterns that should never appear in logs
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# WhatsApp JIDs: keep the domain so person/group is still visible
_JID_PATTERN = re.compile(r"[\w.\-:]+@(s\.whatsapp\.net|g\.us|broadcast|lid)\b")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact PII patterns from a string."""
    result = _JID_PATTERN.sub(lambda m: f"{_REDACTED}@{m.group(1)}", value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # For dicts, only log keys (structure), never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    # For any other type, only log type name
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}


def mask_jid(jid: str | None) -> str:
    """Short, non-identifying form of a JID for logs: last 4 digits + domain."""
    if not jid:
        return "null"
    local, _, domain = jid.partition("@")
    tail = local[-4:] if len(local) > 4 else local
    return f"***{tail}@{domain}" if domain else f"***{tail}"
