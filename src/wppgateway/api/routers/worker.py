"""Worker/internal routes (APP_ROLE=worker)."""

from fastapi import APIRouter

from ..services import get_services

router = APIRouter()


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Tasks subsystem health check."""
    tasks = get_services().tasks
    return {
        "status": "ok",
        "subsystem": "tasks",
        "backend": tasks.backend,
        "pending": tasks.pending_task_ids(),
    }
