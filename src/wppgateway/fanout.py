"""Live fan-out of gateway events to browser clients.

Events are published to the channel `instance_<id>`. LocalHub keeps one
bounded queue per subscriber; the WebSocket route drains it. A slow
subscriber loses events (logged) instead of blocking publishers.

With Redis configured, publishers in any process (public or worker) go
through RedisPublisher, and each process runs a RedisRelay that feeds
what it receives into its own LocalHub.
"""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis

from wppgateway.infra.time import utc_now
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000
CHANNEL_PATTERN = "instance_*"
RELAY_MAX_BACKOFF_SECONDS = 30.0


def channel_for(instance_id: str) -> str:
    return f"instance_{instance_id}"


def build_envelope(instance_id: str, event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": event_name,
        "channel": channel_for(instance_id),
        "data": payload,
        "emittedAt": utc_now().isoformat(),
    }


class Publisher(Protocol):
    def publish(self, instance_id: str, event_name: str, payload: dict[str, Any]) -> None: ...


@dataclass(eq=False)
class Subscription:
    channel: str
    events: "queue.Queue[dict[str, Any]]" = field(
        default_factory=lambda: queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
    )
    dropped: int = 0

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next event, or None after `timeout` seconds without one."""
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None


class LocalHub:
    """In-process publisher. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, instance_id: str) -> Subscription:
        subscription = Subscription(channel=channel_for(instance_id))
        with self._lock:
            self._subscribers.setdefault(subscription.channel, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.channel, None)

    def subscriber_count(self, instance_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel_for(instance_id), []))

    def publish(self, instance_id: str, event_name: str, payload: dict[str, Any]) -> None:
        self.deliver(build_envelope(instance_id, event_name, payload))

    def deliver(self, envelope: dict[str, Any]) -> None:
        """Queue an already-built envelope for the subscribers of its channel."""
        channel = envelope.get("channel")
        with self._lock:
            subscribers = list(self._subscribers.get(channel, []))

        for subscription in subscribers:
            try:
                subscription.events.put_nowait(envelope)
            except queue.Full:
                subscription.dropped += 1
                logger.warning(
                    "fan-out subscriber queue full, event dropped",
                    extra={
                        "extra_fields": safe_log_context(
                            channel=channel,
                            event=envelope.get("event"),
                            dropped=subscription.dropped,
                        )
                    },
                )


class RedisPublisher:
    """Publishes envelopes to Redis so every process's relay sees them."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def publish(self, instance_id: str, event_name: str, payload: dict[str, Any]) -> None:
        envelope = build_envelope(instance_id, event_name, payload)
        try:
            self._client.publish(envelope["channel"], json.dumps(envelope, default=str))
        except redis.RedisError as exc:
            logger.error(
                "fan-out publish failed",
                extra={
                    "extra_fields": safe_log_context(
                        channel=envelope["channel"],
                        event=event_name,
                        error_type=type(exc).__name__,
                    )
                },
            )


class RedisRelay:
    """Feeds envelopes published on Redis into this process's LocalHub.

    One background thread per process, pattern-subscribed to every
    instance channel. Redis errors back off and re-subscribe.
    """

    def __init__(
        self,
        client: redis.Redis,
        hub: LocalHub,
        *,
        poll_timeout: float = 1.0,
        max_backoff: float = RELAY_MAX_BACKOFF_SECONDS,
    ) -> None:
        self._client = client
        self._hub = hub
        self._poll_timeout = poll_timeout
        self._max_backoff = max_backoff
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._pubsub: Any = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def start(self) -> None:
        """Start the relay thread (idempotent). It subscribes on its first poll."""
        with self._lock:
            if self._thread is not None:
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._listen, name="fanout-relay", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
        self._stop.set()
        if thread is not None:
            thread.join(timeout=timeout)
        self._close()

    def _subscribe(self) -> None:
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(CHANNEL_PATTERN)

    def _close(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            pubsub.close()
        except redis.RedisError:
            logger.warning("fan-out relay close failed")

    def _listen(self) -> None:
        errors = 0
        while not self._stop.is_set():
            try:
                self.poll_once()
            except redis.RedisError as exc:
                errors += 1
                delay = min(self._max_backoff, float(errors))
                logger.error(
                    "fan-out relay error, reconnecting",
                    extra={
                        "extra_fields": safe_log_context(
                            attempt=errors, delay_seconds=delay, error_type=type(exc).__name__
                        )
                    },
                )
                self._close()
                self._stop.wait(delay)
            else:
                errors = 0

    def poll_once(self) -> bool:
        """Wait up to poll_timeout for one message and deliver it.

        Subscribes first if needed. Returns True if an envelope was delivered.
        """
        if self._pubsub is None:
            self._subscribe()
        message = self._pubsub.get_message(timeout=self._poll_timeout)
        if message is None:
            return False
        return self.handle_message(message)

    def handle_message(self, message: dict[str, Any]) -> bool:
        """Deliver one pub/sub message. False if it was not a usable envelope."""
        if message.get("type") not in ("pmessage", "message"):
            return False
        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            envelope = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("fan-out relay dropped undecodable message")
            return False
        if not isinstance(envelope, dict) or not isinstance(envelope.get("channel"), str):
            return False
        self._hub.deliver(envelope)
        return True
