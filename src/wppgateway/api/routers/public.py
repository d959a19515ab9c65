"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from ..services import get_services

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/health/details")
def health_details() -> dict:
    """Group cache, pending task, fan-out relay and push-socket counters."""
    services = get_services()
    return {
        "status": "ok",
        "groupCache": services.cache.stats(),
        "sweeperRunning": services.cache.sweeper_running,
        "pendingTasks": len(services.tasks.pending_task_ids()),
        "fanoutRelayRunning": services.relay is not None and services.relay.running,
        "pushSockets": services.sockets.active() if services.sockets is not None else [],
    }
