"""Manual sync trigger and progress routes."""

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.sync.followup import schedule_sync

from ..services import get_services

router = APIRouter(prefix="/instances", tags=["sync"])

logger = get_logger(__name__)


@router.post("/{instance_id}/sync", status_code=202)
async def start_sync(instance_id: str):
    """Schedule a full sync of one instance.

    Returns:
        202 with status "scheduled", or "already_pending" if a sync task is
        already waiting.

    Raises:
        HTTPException 404: Unknown instance.
        HTTPException 409: A sync of this instance is running.
        429: More than five manual syncs of this instance in the last minute;
            the body and Retry-After header say when to try again.
    """
    services = get_services()
    instance = await run_in_threadpool(services.store.get_instance, instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="instance not found")

    retry_after = await run_in_threadpool(services.sync_state.acquire_manual_slot, instance_id)
    if retry_after is not None:
        logger.warning(
            "manual sync rate limited",
            extra={"extra_fields": safe_log_context(instanceId=instance_id, retryAfter=retry_after)},
        )
        return JSONResponse(
            status_code=429,
            content={"detail": "too many sync requests", "retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    if await run_in_threadpool(services.synchronizer.is_running, instance_id):
        raise HTTPException(status_code=409, detail="sync already running")

    scheduled = schedule_sync(
        services.tasks, services.followup, instance_id, delay_seconds=0.0, reason="manual"
    )
    logger.info(
        "manual sync requested",
        extra={"extra_fields": safe_log_context(instanceId=instance_id, scheduled=scheduled)},
    )
    return {"status": "scheduled" if scheduled else "already_pending", "instanceId": instance_id}


@router.get("/{instance_id}/sync/progress")
async def sync_progress(instance_id: str) -> dict:
    """Latest progress snapshot of the instance's sync."""
    services = get_services()
    instance = await run_in_threadpool(services.store.get_instance, instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="instance not found")

    progress = await run_in_threadpool(services.synchronizer.progress, instance_id)
    if progress is None:
        return {
            "instanceId": instance_id,
            "step": None,
            "progressPercent": 0,
            "counters": None,
            "running": await run_in_threadpool(services.synchronizer.is_running, instance_id),
            "updatedAt": None,
        }
    return progress
