"""Tests for live fan-out: the in-process hub and its Redis relay."""

import json
import queue

import pytest
import redis

from helpers import FakeProvider, FakeRedis, FakeTimer, InMemoryChatStore, chat_record, text_message
from wppgateway.api.services import build_services
from wppgateway.fanout import LocalHub, RedisPublisher, RedisRelay, channel_for
from wppgateway.settings import Settings
from wppgateway.tasks.client import TasksClient
from wppgateway.whatsapp.group_cache import GroupMetadataCache


class TestLocalHub:
    def test_channel_name(self):
        assert channel_for("abc") == "instance_abc"

    def test_subscriber_receives_envelope(self):
        hub = LocalHub()
        subscription = hub.subscribe("inst-1")

        hub.publish("inst-1", "message_received", {"chatId": "x"})

        envelope = subscription.get(timeout=1)
        assert envelope["event"] == "message_received"
        assert envelope["channel"] == "instance_inst-1"
        assert envelope["data"] == {"chatId": "x"}
        assert "emittedAt" in envelope

    def test_channels_are_isolated(self):
        hub = LocalHub()
        mine = hub.subscribe("inst-1")
        other = hub.subscribe("inst-2")

        hub.publish("inst-1", "chats_reload", {})

        assert mine.get(timeout=1) is not None
        assert other.get(timeout=0.01) is None

    def test_every_subscriber_gets_a_copy(self):
        hub = LocalHub()
        subs = [hub.subscribe("inst-1") for _ in range(3)]
        hub.publish("inst-1", "sync_start", {})
        assert all(s.get(timeout=1)["event"] == "sync_start" for s in subs)

    def test_unsubscribe(self):
        hub = LocalHub()
        subscription = hub.subscribe("inst-1")
        assert hub.subscriber_count("inst-1") == 1

        hub.unsubscribe(subscription)
        hub.unsubscribe(subscription)

        assert hub.subscriber_count("inst-1") == 0
        hub.publish("inst-1", "chats_reload", {})
        assert subscription.get(timeout=0.01) is None

    def test_full_queue_drops_instead_of_blocking(self):
        hub = LocalHub()
        subscription = hub.subscribe("inst-1")
        subscription.events = queue.Queue(maxsize=2)

        for i in range(5):
            hub.publish("inst-1", "sync_progress", {"i": i})

        assert subscription.dropped == 3
        assert subscription.get(timeout=1)["data"] == {"i": 0}

    def test_publish_without_subscribers(self):
        LocalHub().publish("nobody", "chats_reload", {})


def _drain(relay: RedisRelay) -> int:
    delivered = 0
    while relay.poll_once():
        delivered += 1
    return delivered


class TestRedisFanout:
    def test_publisher_sends_json_envelope(self):
        server = FakeRedis()
        RedisPublisher(server).publish("inst-1", "chats_reload", {"instanceId": "inst-1"})

        channel, raw = server.published[0]
        envelope = json.loads(raw)
        assert channel == "instance_inst-1"
        assert envelope["event"] == "chats_reload"
        assert envelope["channel"] == channel
        assert envelope["data"] == {"instanceId": "inst-1"}

    def test_publish_failure_is_logged_not_raised(self):
        class DownRedis:
            def publish(self, channel, message):
                raise redis.ConnectionError("down")

        RedisPublisher(DownRedis()).publish("inst-1", "chats_reload", {})

    def test_relay_feeds_local_subscribers(self):
        server = FakeRedis()
        hub = LocalHub()
        relay = RedisRelay(server, hub, poll_timeout=0)
        subscription = hub.subscribe("inst-1")
        relay.poll_once()

        RedisPublisher(server).publish("inst-1", "message_received", {"chatId": "x"})
        RedisPublisher(server).publish("inst-2", "message_received", {"chatId": "y"})

        assert _drain(relay) == 2
        assert subscription.get(timeout=1)["data"] == {"chatId": "x"}
        assert subscription.get(timeout=0.01) is None

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "psubscribe", "data": 1},
            {"type": "pmessage", "data": "{not json"},
            {"type": "pmessage", "data": json.dumps(["no", "channel"])},
            {"type": "pmessage", "data": None},
        ],
    )
    def test_unusable_messages_skipped(self, message):
        hub = LocalHub()
        assert RedisRelay(FakeRedis(), hub).handle_message(message) is False

    def test_relay_thread_lifecycle(self):
        server = FakeRedis()
        relay = RedisRelay(server, LocalHub(), poll_timeout=0.01)

        relay.start()
        relay.start()
        assert relay.running

        relay.stop()
        assert not relay.running


class TestCrossProcessSync:
    """A public and a worker graph share one Redis, store and Provider."""

    @pytest.fixture
    def graphs(self):
        server = FakeRedis()
        store = InMemoryChatStore()
        store.add_instance("inst-1", "acme")
        provider = FakeProvider()
        person = "5511999998888@s.whatsapp.net"
        provider.chats = [chat_record(person, pushName="Alice")]
        provider.messages = {person: [text_message("M1", person)]}

        def graph(settings):
            return build_services(
                settings,
                store=store,
                provider=provider,
                cache=GroupMetadataCache(),
                hub=LocalHub(),
                tasks=TasksClient(backend="inline", timer_factory=FakeTimer),
                redis_client=server,
            )

        public = graph(Settings(app_role="public", tasks_backend="http"))
        worker = graph(Settings(app_role="worker"))
        return public, worker

    def test_browser_on_public_sees_worker_sync(self, graphs):
        public, worker = graphs
        browser = public.hub.subscribe("inst-1")
        public.relay._poll_timeout = 0
        public.relay.poll_once()

        worker.followup({"instance_id": "inst-1"})
        _drain(public.relay)

        events = []
        while True:
            envelope = browser.get(timeout=0.01)
            if envelope is None:
                break
            events.append(envelope["event"])
        assert events[0] == "sync_start"
        assert "sync_progress" in events
        assert events[-1] == "sync_complete"

        progress = public.synchronizer.progress("inst-1")
        assert progress is not None
        assert progress["step"] == "completed"

    def test_public_sees_worker_run_in_progress(self, graphs):
        public, worker = graphs
        assert worker.sync_state.try_start("inst-1")

        assert public.synchronizer.is_running("inst-1")

        worker.sync_state.finish("inst-1")
        assert not public.synchronizer.is_running("inst-1")

    def test_worker_without_redis_refuses_to_start(self):
        with pytest.raises(RuntimeError, match="REDIS_URL"):
            build_services(
                Settings(app_role="worker"),
                store=InMemoryChatStore(),
                provider=FakeProvider(),
            )
