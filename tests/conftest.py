"""Shared pytest fixtures for gateway tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import (  # noqa: E402
    FakeProvider,
    FakeTimer,
    InMemoryChatStore,
    RecordingPublisher,
)
from wppgateway.settings import reset_settings  # noqa: E402
from wppgateway.tasks.client import TasksClient  # noqa: E402
from wppgateway.whatsapp.group_cache import GroupMetadataCache  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_and_services():
    """Settings and the service graph are process-wide; start every test clean."""
    from wppgateway.api.services import set_services

    reset_settings()
    set_services(None)
    FakeTimer.created.clear()
    yield
    set_services(None)
    reset_settings()


@pytest.fixture
def store() -> InMemoryChatStore:
    store = InMemoryChatStore()
    store.add_instance("inst-1", "acme")
    return store


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def cache() -> GroupMetadataCache:
    return GroupMetadataCache()


@pytest.fixture
def tasks() -> TasksClient:
    return TasksClient(backend="inline", timer_factory=FakeTimer)


@pytest.fixture
def services(store, provider, tasks):
    """Service graph over in-memory doubles, installed for the HTTP routes."""
    from wppgateway.api.services import build_services, set_services
    from wppgateway.fanout import LocalHub
    from wppgateway.settings import Settings

    services = build_services(
        Settings(sync_settle_delay=3.0),
        store=store,
        provider=provider,
        cache=GroupMetadataCache(),
        hub=LocalHub(),
        tasks=tasks,
    )
    set_services(services)
    return services
