"""Authentication for worker task endpoints.

Tasks posted by the http tasks backend carry X-Internal-Task-Secret. The
check fails closed: with no INTERNAL_TASK_SECRET configured, every task
request is rejected.
"""

from __future__ import annotations

import hmac

from fastapi import Request

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.settings import get_settings

logger = get_logger(__name__)

TASK_SECRET_HEADER = "X-Internal-Task-Secret"


def verify_task_auth(request: Request) -> bool:
    """Verify the internal task secret header.

    Args:
        request: FastAPI request object.

    Returns:
        True if authenticated, False otherwise.
    """
    expected = get_settings().internal_task_secret
    if not expected:
        logger.error(
            "INTERNAL_TASK_SECRET not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_task_secret")},
        )
        return False

    provided = request.headers.get(TASK_SECRET_HEADER, "")
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(reason="secret_mismatch")},
        )
        return False
    return True
