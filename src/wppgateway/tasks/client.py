"""Tasks client for deferred work (follow-up syncs).

Backends, selected via TASKS_BACKEND:
- inline (default): runs the handler on a timer thread in this process
- http: posts the task to the worker, which runs it with its own inline client
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Protocol

from wppgateway.observability.correlation import bound_correlation_id, get_correlation_id
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.settings import get_settings

from .contracts import TaskEnvelopeV1

logger = get_logger(__name__)


class TaskHandler(Protocol):
    """Protocol for task handlers."""

    def __call__(self, payload: dict) -> None:
        """Execute task with given payload."""
        ...


class TasksClient:
    """Schedules tasks, idempotent by task_id while a task is pending.

    A task_id that is scheduled and not yet started is a no-op to schedule
    again; once it has started, the same id can be scheduled anew. Pending
    inline tasks can be cancelled.
    """

    def __init__(
        self,
        backend: str | None = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self._backend = backend or get_settings().tasks_backend
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: dict[str, threading.Timer] = {}

    @property
    def backend(self) -> str:
        return self._backend

    def schedule(
        self,
        task_id: str,
        handler: TaskHandler,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0.0,
        task_name: str = "",
        url_path: str | None = None,
    ) -> bool:
        """Schedule a task to run after `delay_seconds`.

        Args:
            task_id: Unique identifier for idempotency.
            handler: Callable that processes the payload (inline backend).
            payload: Task data (ids only).
            delay_seconds: Delay before the handler runs.
            task_name: Task name for the http envelope.
            url_path: Worker endpoint path (http backend).

        Returns:
            True if scheduled, False if a task with this id is already pending
            (or the http enqueue failed).

        Raises:
            ValueError: If TASKS_BACKEND is unknown, or url_path is missing
                for the http backend.
        """
        correlation_id = get_correlation_id()

        if self._backend == "inline":
            with self._lock:
                if task_id in self._pending:
                    return False
                timer = self._timer_factory(
                    max(0.0, delay_seconds),
                    self._run,
                    args=(task_id, handler, payload, correlation_id),
                )
                timer.daemon = True
                self._pending[task_id] = timer
            timer.start()
            logger.info(
                "task scheduled",
                extra={
                    "extra_fields": safe_log_context(
                        task_id=task_id, delay_seconds=delay_seconds, backend="inline"
                    )
                },
            )
            return True

        elif self._backend == "http":
            if not url_path:
                raise ValueError("url_path is required for the http tasks backend")
            from wppgateway.tasks.http_backend import enqueue_http

            envelope = TaskEnvelopeV1(
                task_name=task_name,
                payload=payload,
                task_id=task_id,
                delay_seconds=max(0.0, delay_seconds),
            )
            return enqueue_http(envelope, url_path, correlation_id)

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def cancel(self, task_id: str) -> bool:
        """Cancel a pending task. Returns True if one was cancelled."""
        with self._lock:
            timer = self._pending.pop(task_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info(
            "task cancelled",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    def is_pending(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._pending

    def pending_task_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def clear(self) -> None:
        """Cancel every pending task (shutdown and tests)."""
        with self._lock:
            timers = list(self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()

    def _run(
        self,
        task_id: str,
        handler: TaskHandler,
        payload: dict[str, Any],
        correlation_id: str | None,
    ) -> None:
        with self._lock:
            self._pending.pop(task_id, None)

        with bound_correlation_id(correlation_id):
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "task failed",
                    extra={"extra_fields": safe_log_context(task_id=task_id)},
                )
