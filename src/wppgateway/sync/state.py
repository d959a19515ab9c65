"""Sync run state shared by every process that talks about one instance.

The public app answers "is a sync running?", "how far along is it?" and
"may this user start another one?" while the run itself may execute in
the worker. LocalSyncState keeps that in memory (single process);
RedisSyncState keeps it in Redis so the public and worker roles agree.

Redis keys (prefix defaults to "wppgateway:sync"):
    <prefix>:running:<instance_id>   owner token, SET NX EX
    <prefix>:progress:<instance_id>  latest progress snapshot (JSON)
    <prefix>:manual:<instance_id>    sorted set of manual trigger times
"""

from __future__ import annotations

import json
import math
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Protocol

import redis

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context

logger = get_logger(__name__)

MANUAL_SYNC_LIMIT = 5
MANUAL_SYNC_WINDOW_SECONDS = 60

# A crashed run releases its claim after this long without progress
RUNNING_TTL_SECONDS = 15 * 60
PROGRESS_TTL_SECONDS = 60 * 60

DEFAULT_KEY_PREFIX = "wppgateway:sync"


def _retry_after(oldest: float, now: float, window: float) -> int:
    return max(1, math.ceil(window - (now - oldest)))


class SyncState(Protocol):
    def try_start(self, instance_id: str) -> bool: ...

    def finish(self, instance_id: str) -> None: ...

    def is_running(self, instance_id: str) -> bool: ...

    def save_progress(self, instance_id: str, snapshot: dict[str, Any]) -> None: ...

    def get_progress(self, instance_id: str) -> dict[str, Any] | None: ...

    def acquire_manual_slot(self, instance_id: str) -> int | None: ...


class LocalSyncState:
    """In-process sync state. Thread-safe."""

    def __init__(
        self,
        limit: int = MANUAL_SYNC_LIMIT,
        window: float = MANUAL_SYNC_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._progress: dict[str, dict[str, Any]] = {}
        self._manual: dict[str, deque[float]] = {}

    def try_start(self, instance_id: str) -> bool:
        with self._lock:
            if instance_id in self._running:
                return False
            self._running.add(instance_id)
            return True

    def finish(self, instance_id: str) -> None:
        with self._lock:
            self._running.discard(instance_id)

    def is_running(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._running

    def save_progress(self, instance_id: str, snapshot: dict[str, Any]) -> None:
        with self._lock:
            self._progress[instance_id] = dict(snapshot)

    def get_progress(self, instance_id: str) -> dict[str, Any] | None:
        with self._lock:
            snapshot = self._progress.get(instance_id)
            return dict(snapshot) if snapshot is not None else None

    def acquire_manual_slot(self, instance_id: str) -> int | None:
        """Record a manual trigger.

        Returns:
            None when allowed, else seconds until the oldest trigger in the
            window expires.
        """
        with self._lock:
            now = self._clock()
            hits = self._manual.setdefault(instance_id, deque())
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if len(hits) >= self.limit:
                return _retry_after(hits[0], now, self.window)
            hits.append(now)
            return None


class RedisSyncState:
    """Sync state in Redis, shared by the public and worker processes."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = DEFAULT_KEY_PREFIX,
        limit: int = MANUAL_SYNC_LIMIT,
        window: float = MANUAL_SYNC_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}

    def _key(self, kind: str, instance_id: str) -> str:
        return f"{self._prefix}:{kind}:{instance_id}"

    def try_start(self, instance_id: str) -> bool:
        token = uuid.uuid4().hex
        acquired = self._client.set(
            self._key("running", instance_id), token, nx=True, ex=RUNNING_TTL_SECONDS
        )
        if not acquired:
            return False
        with self._lock:
            self._tokens[instance_id] = token
        return True

    def finish(self, instance_id: str) -> None:
        with self._lock:
            token = self._tokens.pop(instance_id, None)
        if token is None:
            return
        key = self._key("running", instance_id)
        # Only release our own claim; an expired one may belong to another run
        if self._client.get(key) == token:
            self._client.delete(key)

    def is_running(self, instance_id: str) -> bool:
        return bool(self._client.exists(self._key("running", instance_id)))

    def save_progress(self, instance_id: str, snapshot: dict[str, Any]) -> None:
        pipe = self._client.pipeline()
        pipe.set(self._key("progress", instance_id), json.dumps(snapshot), ex=PROGRESS_TTL_SECONDS)
        with self._lock:
            owned = instance_id in self._tokens
        if owned:
            pipe.expire(self._key("running", instance_id), RUNNING_TTL_SECONDS)
        pipe.execute()

    def get_progress(self, instance_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._key("progress", instance_id))
        if raw is None:
            return None
        try:
            snapshot = json.loads(raw)
        except ValueError:
            logger.warning(
                "unreadable sync progress snapshot",
                extra={"extra_fields": safe_log_context(instanceId=instance_id)},
            )
            return None
        return snapshot if isinstance(snapshot, dict) else None

    def acquire_manual_slot(self, instance_id: str) -> int | None:
        """Sliding-window limit on manual triggers, counted across processes.

        Returns:
            None when allowed, else seconds until a slot frees up.
        """
        key = self._key("manual", instance_id)
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"

        pipe = self._client.pipeline()
        pipe.zremrangebyscore(key, 0, now - self.window)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.expire(key, math.ceil(self.window))
        _, _, count, oldest, _ = pipe.execute()

        if count <= self.limit:
            return None

        self._client.zrem(key, member)
        oldest_at = oldest[0][1] if oldest else now
        return _retry_after(oldest_at, now, self.window)
