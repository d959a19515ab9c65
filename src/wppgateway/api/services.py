"""Process-wide service graph.

One group cache, one fan-out hub and one tasks client per process, shared
by the bulk synchronizer and the event ingestor. Routes reach them through
get_services(); tests install their own graph with set_services().

With REDIS_URL set, events are published through Redis and relayed into
every process's hub, and sync run state (running flag, progress, manual
rate limit) lives in Redis, so the public app sees syncs the worker runs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import redis

from wppgateway.fanout import LocalHub, Publisher, RedisPublisher, RedisRelay
from wppgateway.ingest.ingestor import EventIngestor
from wppgateway.ingest.socket_consumer import SocketConsumers
from wppgateway.provider.client import EvolutionClient, Provider, RetryingProvider
from wppgateway.settings import Settings, get_settings
from wppgateway.store.gateway import ChatStore
from wppgateway.sync.bulk import BulkSynchronizer
from wppgateway.sync.followup import FollowUpSync
from wppgateway.sync.state import LocalSyncState, RedisSyncState, SyncState
from wppgateway.tasks.client import TasksClient
from wppgateway.whatsapp.group_cache import GroupMetadataCache


@dataclass
class Services:
    store: ChatStore
    provider: Provider
    cache: GroupMetadataCache
    hub: LocalHub
    publisher: Publisher
    sync_state: SyncState
    tasks: TasksClient
    synchronizer: BulkSynchronizer
    followup: FollowUpSync
    ingestor: EventIngestor
    relay: RedisRelay | None = None
    sockets: SocketConsumers | None = None


def runs_tasks(settings: Settings) -> bool:
    """True if sync tasks execute in this process."""
    return settings.app_role == "worker" or settings.tasks_backend != "http"


def build_services(
    settings: Settings | None = None,
    *,
    store: ChatStore | None = None,
    provider: Provider | None = None,
    cache: GroupMetadataCache | None = None,
    hub: LocalHub | None = None,
    tasks: TasksClient | None = None,
    redis_client: redis.Redis | None = None,
) -> Services:
    """Wire the service graph. Any component can be supplied (tests).

    Raises:
        RuntimeError: Sync tasks run in a separate worker but no Redis is
            configured to share their events and state.
    """
    settings = settings or get_settings()

    if redis_client is None and settings.redis_url:
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    if redis_client is None and (
        settings.app_role == "worker" or settings.tasks_backend == "http"
    ):
        raise RuntimeError("REDIS_URL is required when sync tasks run in the worker")

    if store is None:
        from wppgateway.store.postgres import PostgresChatStore

        store = PostgresChatStore()
    if provider is None:
        provider = RetryingProvider(EvolutionClient.from_settings(settings))
    cache = cache or GroupMetadataCache()
    hub = hub or LocalHub()
    if tasks is None:
        # The worker runs the tasks it receives itself
        backend = "inline" if settings.app_role == "worker" else settings.tasks_backend
        tasks = TasksClient(backend=backend)

    publisher: Publisher
    sync_state: SyncState
    relay: RedisRelay | None = None
    if redis_client is not None:
        publisher = RedisPublisher(redis_client)
        sync_state = RedisSyncState(redis_client)
        relay = RedisRelay(redis_client, hub)
    else:
        publisher = hub
        sync_state = LocalSyncState()

    synchronizer = BulkSynchronizer(store, provider, cache, publisher, state=sync_state)
    followup = FollowUpSync(store, provider, synchronizer, settings.public_webhook_base_url)
    ingestor = EventIngestor(
        store,
        provider,
        cache,
        publisher,
        tasks,
        followup,
        settle_delay=settings.sync_settle_delay,
    )

    sockets: SocketConsumers | None = None
    if settings.evolution_websocket_enabled and runs_tasks(settings):
        sockets = SocketConsumers(
            store,
            provider,
            ingestor,
            base_url=settings.evolution_ws_url or settings.evolution_base_url,
            api_key=settings.evolution_api_key,
        )
        followup.sockets = sockets

    return Services(
        store=store,
        provider=provider,
        cache=cache,
        hub=hub,
        publisher=publisher,
        sync_state=sync_state,
        tasks=tasks,
        synchronizer=synchronizer,
        followup=followup,
        ingestor=ingestor,
        relay=relay,
        sockets=sockets,
    )


_services: Services | None = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def set_services(services: Services | None) -> None:
    """Install a service graph (None resets to lazy default)."""
    global _services
    with _services_lock:
        _services = services
