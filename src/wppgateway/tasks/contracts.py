"""Task contracts v1 - payloads exchanged between the api and the worker.

Payloads carry ids only (instance id, reason), never phone numbers or
message content.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

SYNC_TASK_NAME = "instance.sync"


@dataclass(frozen=True)
class TaskEnvelopeV1:
    """Task envelope v1.

    Attributes:
        version: Contract version (always "v1").
        task_name: Name identifying the task type (e.g. "instance.sync").
        payload: Task-specific data (ids only).
        task_id: Unique identifier; a pending task with the same id is not
            scheduled twice.
        delay_seconds: How long the receiver waits before running the task.
    """

    version: Literal["v1"] = field(default="v1", init=False)
    task_name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    task_id: str = ""
    delay_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "task_name": self.task_name,
            "payload": self.payload,
            "task_id": self.task_id,
            "delay_seconds": self.delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskEnvelopeV1":
        """Create from dict.

        Raises:
            ValueError: On unsupported version or malformed fields.
        """
        if data.get("version") != "v1":
            raise ValueError(f"Unsupported version: {data.get('version')}")
        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")
        try:
            delay = max(0.0, float(data.get("delay_seconds") or 0.0))
        except (TypeError, ValueError):
            raise ValueError("delay_seconds must be a number")
        return cls(
            task_name=str(data.get("task_name", "")),
            payload=payload,
            task_id=str(data.get("task_id", "")),
            delay_seconds=delay,
        )


def sync_task_id(instance_id: str) -> str:
    """Task id of the follow-up sync for an instance (one pending at a time)."""
    return f"sync:{instance_id}"
