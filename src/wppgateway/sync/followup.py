"""Follow-up sync task: re-establish the live push transport, then run a full sync.

Scheduled by the ingestor when an instance connects and by the manual
sync route. The task runs on the tasks client (inline timer thread or the
worker's /tasks/sync/run endpoint), never on the event path.
"""

from __future__ import annotations

from typing import Any

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.provider.client import Provider
from wppgateway.store.gateway import ChatStore, InstanceNotFoundError
from wppgateway.tasks.client import TasksClient
from wppgateway.tasks.contracts import SYNC_TASK_NAME, sync_task_id

from .bulk import BulkSynchronizer, SyncAlreadyRunningError, SyncFailedError

logger = get_logger(__name__)

SYNC_TASK_PATH = "/tasks/sync/run"


def webhook_url(public_base_url: str, provider_name: str) -> str:
    return f"{public_base_url.rstrip('/')}/webhooks/evolution/{provider_name}"


class FollowUpSync:
    """Task handler for payloads {"instance_id": ..., "reason": ...}."""

    def __init__(
        self,
        store: ChatStore,
        provider: Provider,
        synchronizer: BulkSynchronizer,
        public_webhook_base_url: str = "",
    ) -> None:
        self._store = store
        self._provider = provider
        self._synchronizer = synchronizer
        self._public_webhook_base_url = public_webhook_base_url
        # Push-socket consumers, when this process runs them (set after wiring)
        self.sockets: Any = None

    def ensure_webhook(self, instance: dict[str, Any]) -> bool:
        """(Re)register the webhook. Returns False when skipped or failed."""
        if not self._public_webhook_base_url:
            return False
        provider_name = instance["evolution_instance_name"]
        try:
            self._provider.set_webhook(
                provider_name, webhook_url(self._public_webhook_base_url, provider_name)
            )
        except Exception as exc:
            logger.warning(
                "webhook setup failed",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance["id"], error_type=type(exc).__name__
                    )
                },
            )
            return False
        return True

    def __call__(self, payload: dict) -> None:
        instance_id = payload.get("instance_id", "")
        log_ctx = {"instanceId": instance_id, "reason": payload.get("reason", "")}

        instance = self._store.get_instance(instance_id)
        if instance is None:
            logger.warning(
                "follow-up sync skipped: unknown instance",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )
            return

        self.ensure_webhook(instance)
        if self.sockets is not None:
            self.sockets.connect(instance)

        try:
            self._synchronizer.sync(instance_id)
        except SyncAlreadyRunningError:
            logger.info(
                "follow-up sync skipped: already running",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )
        except (SyncFailedError, InstanceNotFoundError) as exc:
            logger.error(
                "follow-up sync failed",
                extra={
                    "extra_fields": safe_log_context(**log_ctx, error_type=type(exc).__name__)
                },
            )


def schedule_sync(
    tasks: TasksClient,
    handler: FollowUpSync,
    instance_id: str,
    *,
    delay_seconds: float = 0.0,
    reason: str = "manual",
) -> bool:
    """Schedule a follow-up sync; False if one is already pending."""
    return tasks.schedule(
        sync_task_id(instance_id),
        handler,
        {"instance_id": instance_id, "reason": reason},
        delay_seconds=delay_seconds,
        task_name=SYNC_TASK_NAME,
        url_path=SYNC_TASK_PATH,
    )


def cancel_pending_sync(tasks: TasksClient, instance_id: str) -> bool:
    return tasks.cancel(sync_task_id(instance_id))
