"""Evolution push-socket transport.

An alternative to webhooks: one socket per connected instance at
ws(s)://<evolution>/websocket/<provider name>. Frames carry the same
{event, instance, data} body the webhook does and go through the same
parse_event / EventIngestor path.

Frame handling:
- "ping"/"pong" keepalives, invalid JSON and frames without an event are
  ignored;
- the instance is looked up fresh for every frame;
- a 404 on the handshake means the instance is gone at the Provider; the
  consumer stops instead of reconnecting.

Reconnects wait RetryPolicy.delay_for(attempt), capped at 30 seconds; the
attempt counter resets on every successful open.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable
from urllib.parse import urlsplit, urlunsplit

import websocket

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.provider.client import Provider
from wppgateway.provider.errors import ProviderError
from wppgateway.provider.retry import RetryPolicy
from wppgateway.store.gateway import ChatStore

from .events import InvalidEventError, parse_event
from .ingestor import EventIngestor

logger = get_logger(__name__)

KEEPALIVE_FRAMES = frozenset({"ping", "pong"})
MAX_RECONNECT_DELAY_SECONDS = 30.0
PING_INTERVAL_SECONDS = 30
PING_TIMEOUT_SECONDS = 10

# Instances whose socket is opened at startup
SOCKET_STATUSES: tuple[str, ...] = ("connected", "connecting")

SocketAppFactory = Callable[..., Any]


def websocket_url(base_url: str, provider_name: str) -> str:
    """ws(s) URL of one instance's push socket under the Provider base URL."""
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    path = parts.path.rstrip("/")
    return urlunsplit((scheme, parts.netloc, f"{path}/websocket/{provider_name}", "", ""))


class EvolutionSocketConsumer:
    """Reads one instance's push socket on a background thread."""

    def __init__(
        self,
        instance_id: str,
        url: str,
        api_key: str,
        store: ChatStore,
        ingestor: EventIngestor,
        *,
        policy: RetryPolicy | None = None,
        app_factory: SocketAppFactory = websocket.WebSocketApp,
    ) -> None:
        self.instance_id = instance_id
        self.url = url
        self._api_key = api_key
        self._store = store
        self._ingestor = ingestor
        self._policy = policy or RetryPolicy(base_delay=1.0)
        self._app_factory = app_factory

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._app: Any = None
        self._thread: threading.Thread | None = None

        self.attempts = 0
        self.permanent_error = False
        self.frames_ingested = 0

    @property
    def alive(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def reconnect_delay(self, attempt: int) -> float:
        return min(MAX_RECONNECT_DELAY_SECONDS, self._policy.delay_for(attempt))

    # Lifecycle

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self.run, name=f"evolution-socket-{self.instance_id}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._lock:
            app, thread = self._app, self._thread
        if app is not None:
            app.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def run(self) -> None:
        """Connect, read until the socket closes, then back off and reconnect."""
        log_ctx = {"instanceId": self.instance_id}
        while not self._stop.is_set():
            app = self._app_factory(
                self.url,
                header={"apikey": self._api_key},
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            with self._lock:
                self._app = app
            app.run_forever(
                ping_interval=PING_INTERVAL_SECONDS, ping_timeout=PING_TIMEOUT_SECONDS
            )
            with self._lock:
                self._app = None

            if self._stop.is_set() or self.permanent_error:
                break
            self.attempts += 1
            delay = self.reconnect_delay(self.attempts)
            logger.info(
                "evolution socket reconnecting",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, attempt=self.attempts, delay_seconds=delay
                    )
                },
            )
            self._stop.wait(delay)

        logger.info(
            "evolution socket consumer stopped",
            extra={
                "extra_fields": safe_log_context(**log_ctx, permanent=self.permanent_error)
            },
        )

    # Socket callbacks

    def _on_open(self, ws: Any) -> None:
        self.attempts = 0
        logger.info(
            "evolution socket open",
            extra={"extra_fields": safe_log_context(instanceId=self.instance_id)},
        )

    def _on_message(self, ws: Any, message: Any) -> None:
        self.handle_frame(message)

    def _on_error(self, ws: Any, error: Any) -> None:
        status = getattr(error, "status_code", None)
        if isinstance(error, websocket.WebSocketBadStatusException) and status == 404:
            self.permanent_error = True
            self._stop.set()
        logger.warning(
            "evolution socket error",
            extra={
                "extra_fields": safe_log_context(
                    instanceId=self.instance_id,
                    status=status,
                    error_type=type(error).__name__,
                )
            },
        )

    def _on_close(self, ws: Any, status_code: Any, reason: Any) -> None:
        logger.info(
            "evolution socket closed",
            extra={
                "extra_fields": safe_log_context(instanceId=self.instance_id, code=status_code)
            },
        )

    def handle_frame(self, raw: Any) -> dict[str, Any] | None:
        """Apply one socket frame. Returns the ingestion outcome, if any."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if not isinstance(raw, str):
            return None
        text = raw.strip()
        if not text or text.lower() in KEEPALIVE_FRAMES:
            return None

        try:
            frame = json.loads(text)
        except ValueError:
            logger.warning(
                "evolution socket frame is not JSON",
                extra={"extra_fields": safe_log_context(instanceId=self.instance_id)},
            )
            return None
        if not isinstance(frame, dict) or not frame.get("event"):
            return None

        instance = self._store.get_instance(self.instance_id)
        if instance is None:
            logger.warning(
                "evolution socket frame for unknown instance, stopping",
                extra={"extra_fields": safe_log_context(instanceId=self.instance_id)},
            )
            self.stop()
            return None

        try:
            event = parse_event(frame)
        except InvalidEventError as exc:
            logger.warning(
                "invalid evolution socket event",
                extra={
                    "extra_fields": safe_log_context(instanceId=self.instance_id, error=str(exc))
                },
            )
            return None

        outcome = self._ingestor.ingest(instance, event)
        self.frames_ingested += 1
        return outcome


class SocketConsumers:
    """One push-socket consumer per instance, keyed by instance id."""

    def __init__(
        self,
        store: ChatStore,
        provider: Provider,
        ingestor: EventIngestor,
        *,
        base_url: str,
        api_key: str,
        policy: RetryPolicy | None = None,
        consumer_factory: Callable[..., EvolutionSocketConsumer] = EvolutionSocketConsumer,
    ) -> None:
        self._store = store
        self._provider = provider
        self._ingestor = ingestor
        self._base_url = base_url
        self._api_key = api_key
        self._policy = policy
        self._consumer_factory = consumer_factory
        self._lock = threading.Lock()
        self._consumers: dict[str, EvolutionSocketConsumer] = {}

    def active(self) -> list[str]:
        with self._lock:
            return sorted(i for i, c in self._consumers.items() if c.alive)

    def connect(self, instance: dict[str, Any]) -> EvolutionSocketConsumer | None:
        """Enable the socket at the Provider and start reading it (idempotent).

        Returns None when the Provider no longer knows the instance.
        """
        instance_id = instance["id"]
        provider_name = instance["evolution_instance_name"]
        with self._lock:
            existing = self._consumers.get(instance_id)
        if existing is not None and existing.alive:
            return existing

        try:
            self._provider.set_websocket(provider_name)
        except ProviderError as exc:
            logger.warning(
                "websocket setup failed",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance_id, status=exc.status_code, code=exc.code
                    )
                },
            )
            if exc.status_code == 404:
                return None

        consumer = self._consumer_factory(
            instance_id,
            websocket_url(self._base_url, provider_name),
            self._api_key,
            self._store,
            self._ingestor,
            policy=self._policy,
        )
        with self._lock:
            self._consumers[instance_id] = consumer
        consumer.start()
        return consumer

    def disconnect(self, instance_id: str) -> bool:
        with self._lock:
            consumer = self._consumers.pop(instance_id, None)
        if consumer is None:
            return False
        consumer.stop()
        return True

    def start_all(self) -> int:
        """Connect every instance that is connected or connecting. Returns how many started."""
        started = 0
        for instance in self._store.list_instances_by_status(SOCKET_STATUSES):
            if self.connect(instance) is not None:
                started += 1
        logger.info(
            "evolution sockets started",
            extra={"extra_fields": safe_log_context(count=started)},
        )
        return started

    def shutdown(self) -> None:
        with self._lock:
            consumers, self._consumers = list(self._consumers.values()), {}
        for consumer in consumers:
            consumer.stop()
