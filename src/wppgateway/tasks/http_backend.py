"""HTTP backend for tasks - sends task envelopes to the worker via HTTP POST.

Used where api and worker run as separate containers on the same network.
The worker authenticates calls with the shared X-Internal-Task-Secret.
"""

import requests

from wppgateway.observability.correlation import CORRELATION_ID_HEADER
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.settings import get_settings

from .contracts import TaskEnvelopeV1

logger = get_logger(__name__)

HTTP_TIMEOUT = 30


def enqueue_http(
    envelope: TaskEnvelopeV1,
    url_path: str,
    correlation_id: str | None = None,
) -> bool:
    """POST a task envelope to the worker.

    Args:
        envelope: Task envelope (delay is honoured by the worker).
        url_path: Worker endpoint path (e.g. "/tasks/sync/run").
        correlation_id: Optional correlation ID for tracing.

    Returns:
        True if the worker accepted the task (2xx), False otherwise.
    """
    settings = get_settings()
    url = f"{settings.worker_base_url}{url_path}"
    headers = {
        "Content-Type": "application/json",
        CORRELATION_ID_HEADER: correlation_id or "",
        "X-Task-Id": envelope.task_id,
    }
    if settings.internal_task_secret:
        headers["X-Internal-Task-Secret"] = settings.internal_task_secret

    try:
        response = requests.post(
            url,
            json=envelope.to_dict(),
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    task_id=envelope.task_id, url_path=url_path, error_type=type(e).__name__
                )
            },
        )
        return False

    logger.info(
        "HTTP task enqueued successfully",
        extra={"extra_fields": safe_log_context(task_id=envelope.task_id, url_path=url_path)},
    )
    return True
