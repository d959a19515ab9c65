"""Group metadata cache with TTL, request coalescing and rate limiting.

One instance is created per process and injected into both the bulk
synchronizer and the event ingestor. Keys are (instance_key, group_id).

get_group_info() resolution order:
1. fresh entry (age < ttl) -> returned without a fetch;
2. a fetch for the same key already in flight -> wait for its result;
3. last fetch attempt less than min_request_interval ago -> stale value
   (or None) without a fetch;
4. otherwise fetch. A truthy result is stored; a falsy result or an
   exception returns the stale value (or None).

The cache never raises from get_group_info().
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import mask_jid, safe_log_context

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MIN_REQUEST_INTERVAL_SECONDS = 30
DEFAULT_SWEEP_INTERVAL_SECONDS = 30 * 60

GroupFetcher = Callable[[], dict[str, Any] | None]
CacheKey = tuple[str, str]


@dataclass(frozen=True)
class _Entry:
    data: dict[str, Any]
    fetched_at: float


class GroupMetadataCache:
    """Thread-safe cache of provider group metadata."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        min_request_interval: float = DEFAULT_MIN_REQUEST_INTERVAL_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.min_request_interval = min_request_interval
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: dict[CacheKey, _Entry] = {}
        self._last_attempt: dict[CacheKey, float] = {}
        self._pending: dict[CacheKey, Future] = {}

        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._rate_limited = 0
        self._fetch_errors = 0

        self._timer: threading.Timer | None = None
        self._running = False

    def get_group_info(
        self,
        instance_key: str,
        group_id: str,
        fetcher: GroupFetcher,
    ) -> dict[str, Any] | None:
        """Return metadata for a group, fetching through `fetcher` if needed.

        Args:
            instance_key: Tenant instance key (provider instance name).
            group_id: Normalized group conversation id.
            fetcher: Zero-argument callable hitting the provider.

        Returns:
            Metadata dict, or None when nothing is cached and the fetch
            failed or was rate limited.
        """
        key = (instance_key, group_id)

        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and now - entry.fetched_at < self.ttl:
                self._hits += 1
                return entry.data

            pending = self._pending.get(key)
            if pending is not None:
                self._coalesced += 1
                owner = False
            else:
                last_attempt = self._last_attempt.get(key)
                if last_attempt is not None and now - last_attempt < self.min_request_interval:
                    self._rate_limited += 1
                    return entry.data if entry is not None else None

                pending = Future()
                self._pending[key] = pending
                self._last_attempt[key] = now
                self._misses += 1
                owner = True

        if not owner:
            return pending.result()

        result: dict[str, Any] | None = None
        try:
            result = self._fetch(key, fetcher)
        finally:
            # Waiters always wake up, with the stale value if the owner was aborted
            with self._lock:
                if self._pending.get(key) is pending:
                    del self._pending[key]
                    stale = self._entries.get(key)
                    result = stale.data if stale is not None else None
            pending.set_result(result)
        return result

    def _fetch(self, key: CacheKey, fetcher: GroupFetcher) -> dict[str, Any] | None:
        instance_key, group_id = key
        data: dict[str, Any] | None = None
        try:
            data = fetcher()
        except Exception as exc:
            with self._lock:
                self._fetch_errors += 1
            logger.warning(
                "group metadata fetch failed",
                extra={
                    "extra_fields": safe_log_context(
                        instanceKey=instance_key,
                        groupId=mask_jid(group_id),
                        error_type=type(exc).__name__,
                    )
                },
            )

        with self._lock:
            self._pending.pop(key, None)
            if data:
                self._entries[key] = _Entry(data=data, fetched_at=self._clock())
                return data
            stale = self._entries.get(key)
            return stale.data if stale is not None else None

    def sweep(self) -> int:
        """Drop entries older than the TTL. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now - e.fetched_at >= self.ttl]
            for key in expired:
                del self._entries[key]
            stale_attempts = [
                k
                for k, at in self._last_attempt.items()
                if now - at >= self.min_request_interval and k not in self._pending
            ]
            for key in stale_attempts:
                del self._last_attempt[key]

        if expired:
            logger.info(
                "group cache sweep",
                extra={"extra_fields": safe_log_context(removed=len(expired))},
            )
        return len(expired)

    def invalidate(self, instance_key: str, group_id: str) -> None:
        """Forget one group so the next lookup fetches it again."""
        key = (instance_key, group_id)
        with self._lock:
            self._entries.pop(key, None)
            self._last_attempt.pop(key, None)

    def invalidate_instance(self, instance_key: str) -> int:
        """Forget every group of an instance. Returns how many entries were dropped."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == instance_key]
            for key in keys:
                del self._entries[key]
            for key in [k for k in self._last_attempt if k[0] == instance_key]:
                del self._last_attempt[key]
        return len(keys)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            fresh = sum(1 for e in self._entries.values() if now - e.fetched_at < self.ttl)
            return {
                "entries": len(self._entries),
                "fresh": fresh,
                "stale": len(self._entries) - fresh,
                "pending": len(self._pending),
                "hits": self._hits,
                "misses": self._misses,
                "coalesced": self._coalesced,
                "rateLimited": self._rate_limited,
                "fetchErrors": self._fetch_errors,
                "ttlSeconds": self.ttl,
            }

    # Sweeper lifecycle

    def start_sweeper(self) -> None:
        """Start the periodic sweep timer (idempotent)."""
        with self._lock:
            if self._running:
                return
            self._running = True
        self._schedule_sweep()

    def stop(self) -> None:
        """Stop the periodic sweep timer."""
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _schedule_sweep(self) -> None:
        timer = threading.Timer(self.sweep_interval, self._run_sweep)
        timer.daemon = True
        with self._lock:
            if not self._running:
                return
            self._timer = timer
        timer.start()

    def _run_sweep(self) -> None:
        try:
            self.sweep()
        except Exception:
            logger.exception("group cache sweep failed")
        self._schedule_sweep()

    @property
    def sweeper_running(self) -> bool:
        with self._lock:
            return self._running
