"""Retry policy for Provider calls.

One RetryPolicy value is shared by every caller that talks to the
Provider: chat listing, message listing, group lookups and webhook setup
all retry the same way.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import requests

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context

from .errors import ProviderError

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})
RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EPIPE"})


def is_retryable_error(exc: BaseException) -> bool:
    """Transient Provider failures: rate limit, timeouts, 5xx, dropped connections."""
    if isinstance(exc, ProviderError):
        if exc.status_code is not None:
            return exc.status_code in RETRYABLE_STATUS_CODES or exc.status_code >= 500
        return exc.code in RETRYABLE_ERROR_CODES
    return isinstance(exc, (requests.ConnectionError, requests.Timeout))


@dataclass(frozen=True)
class RetryPolicy:
    """Linear-backoff retry.

    Attempt n (1-based) that fails with a retryable error sleeps
    n * base_delay seconds before attempt n + 1. Non-retryable errors are
    re-raised immediately; the last error is re-raised once max_attempts
    is exhausted.
    """

    max_attempts: int = 5
    base_delay: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay

    def run(self, operation: Callable[[], T], description: str = "provider call") -> T:
        """Run `operation` until it succeeds or retries are exhausted.

        Raises:
            The operation's last exception.
        """
        attempt = 1
        while True:
            try:
                return operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "provider call failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            operation=description,
                            attempt=attempt,
                            max_attempts=self.max_attempts,
                            delay_seconds=delay,
                            error_type=type(exc).__name__,
                        )
                    },
                )
                self.sleep(delay)
                attempt += 1
