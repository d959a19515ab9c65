"""Structured JSON logging with correlation ID support.

Every record is one JSON object on stdout. Context goes in
`extra={"extra_fields": safe_log_context(...)}` so values are redacted
before they reach the record.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

SERVICE_NAME = "wppgateway"


class JsonFormatter(logging.Formatter):
    """JSON formatter with service, role and correlation ID fields."""

    def __init__(self, role: str | None = None) -> None:
        super().__init__()
        self._role = role or os.environ.get("APP_ROLE", "public")

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": SERVICE_NAME,
            "role": self._role,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["errorType"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                # Reserved keys win over caller context
                log_obj.setdefault(key, value)

        return json.dumps(log_obj, default=str)


def _level_from_env() -> int:
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Get a logger configured for JSON output.

    Level comes from LOG_LEVEL (default INFO; unknown names fall back to INFO).
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_env())
        logger.propagate = False

    return logger
