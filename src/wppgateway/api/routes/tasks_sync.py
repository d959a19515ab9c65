"""Worker route for follow-up sync tasks.

The public app's http tasks backend posts a TaskEnvelopeV1 here. The
worker schedules it on its own inline tasks client (honouring the
envelope's delay) and answers right away; the sync itself runs on a timer
thread.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response

from wppgateway.api.task_auth import verify_task_auth
from wppgateway.observability.correlation import get_correlation_id
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.tasks.contracts import SYNC_TASK_NAME, TaskEnvelopeV1, sync_task_id

from ..services import get_services

router = APIRouter(prefix="/tasks/sync", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/run")
async def run_sync_task(request: Request) -> Response:
    """Accept a follow-up sync task.

    Returns:
        200 "ok" if scheduled, 200 "duplicate" if one is already pending.
        400 if the body is not a v1 sync envelope.
        401 if task auth fails.
    """
    if not verify_task_auth(request):
        return Response(status_code=401, content="unauthorized")

    correlation_id = get_correlation_id()

    try:
        data: Any = await request.json()
    except Exception:
        return Response(status_code=400, content="invalid json")
    if not isinstance(data, dict):
        return Response(status_code=400, content="invalid json")

    try:
        envelope = TaskEnvelopeV1.from_dict(data)
    except ValueError as exc:
        logger.warning(
            "invalid task envelope",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(exc))},
        )
        return Response(status_code=400, content="invalid envelope")

    instance_id = envelope.payload.get("instance_id")
    if envelope.task_name != SYNC_TASK_NAME or not isinstance(instance_id, str) or not instance_id:
        return Response(status_code=400, content="invalid payload")

    services = get_services()
    scheduled = services.tasks.schedule(
        sync_task_id(instance_id),
        services.followup,
        envelope.payload,
        delay_seconds=envelope.delay_seconds,
        task_name=envelope.task_name,
    )
    logger.info(
        "sync task accepted",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                instanceId=instance_id,
                task_id=envelope.task_id,
                scheduled=scheduled,
            )
        },
    )
    return Response(status_code=200, content="ok" if scheduled else "duplicate")
