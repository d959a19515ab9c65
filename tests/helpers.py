"""Shared test doubles and payload builders for gateway tests.

These are NOT fixtures - they are regular classes and functions that test
modules and conftest.py import.
"""

from __future__ import annotations

import fnmatch
import itertools
import queue
import threading
import uuid
from datetime import datetime
from typing import Any, Callable

from wppgateway.infra.time import utc_now


class InMemoryChatStore:
    """ChatStore kept in dicts. Every method holds one lock, so each call is atomic."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._seq = itertools.count(1)
        self.instances: dict[str, dict[str, Any]] = {}
        self.contacts: dict[tuple[str, str], dict[str, Any]] = {}
        self.chats: dict[tuple[str, str], dict[str, Any]] = {}
        self.messages: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []

    # Setup helpers

    def add_instance(
        self,
        instance_id: str = "inst-1",
        provider_name: str = "acme",
        status: str = "disconnected",
    ) -> dict[str, Any]:
        instance = {
            "id": instance_id,
            "instance_name": provider_name.title(),
            "evolution_instance_name": provider_name,
            "status": status,
            "qr_code": None,
            "profile_name": None,
            "phone": None,
            "last_seen": None,
        }
        self.instances[instance_id] = instance
        return instance

    # Instances

    def get_instance(self, instance_id: str) -> dict[str, Any] | None:
        with self._lock:
            instance = self.instances.get(instance_id)
            return dict(instance) if instance else None

    def find_instance_by_provider_name(self, provider_name: str) -> dict[str, Any] | None:
        with self._lock:
            for instance in self.instances.values():
                if instance["evolution_instance_name"] == provider_name:
                    return dict(instance)
            return None

    def list_instances_by_status(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(i) for i in self.instances.values() if i["status"] in statuses]

    def update_instance(self, instance_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            self.calls.append("update_instance")
            if instance_id in self.instances:
                self.instances[instance_id].update(fields)

    # Contacts

    def find_contact(self, instance_id: str, phone: str) -> dict[str, Any] | None:
        with self._lock:
            contact = self.contacts.get((instance_id, phone))
            return dict(contact) if contact else None

    def find_or_create_contact(
        self, instance_id: str, phone: str, defaults: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        with self._lock:
            key = (instance_id, phone)
            if key in self.contacts:
                return dict(self.contacts[key]), False
            contact = {
                "id": str(uuid.uuid4()),
                "instance_id": instance_id,
                "phone": phone,
                "name": None,
                "push_name": None,
                "profile_pic_url": None,
                "is_group": False,
                "group_metadata": None,
                "last_seen": None,
            }
            contact.update(defaults)
            self.contacts[key] = contact
            return dict(contact), True

    def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            self.calls.append("update_contact")
            for contact in self.contacts.values():
                if contact["id"] == contact_id:
                    contact.update(fields)

    # Chats

    def find_chat(self, instance_id: str, chat_id: str) -> dict[str, Any] | None:
        with self._lock:
            chat = self.chats.get((instance_id, chat_id))
            return dict(chat) if chat else None

    def find_or_create_chat(
        self, instance_id: str, chat_id: str, defaults: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        with self._lock:
            key = (instance_id, chat_id)
            if key in self.chats:
                return dict(self.chats[key]), False
            chat = {
                "id": str(uuid.uuid4()),
                "instance_id": instance_id,
                "chat_id": chat_id,
                "contact_id": None,
                "last_message": None,
                "last_message_time": None,
                "unread_count": 0,
                "pinned": False,
                "archived": False,
                "muted": False,
            }
            chat.update(defaults)
            self.chats[key] = chat
            return dict(chat), True

    def update_chat(self, instance_id: str, chat_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            chat = self.chats.get((instance_id, chat_id))
            if chat is None:
                return
            chat.update(fields)
            chat["unread_count"] = max(0, chat["unread_count"])

    def apply_last_message(
        self,
        instance_id: str,
        chat_id: str,
        summary: dict[str, Any],
        message_time: datetime,
    ) -> bool:
        with self._lock:
            chat = self.chats.get((instance_id, chat_id))
            if chat is None:
                return False
            current = chat["last_message_time"]
            if current is not None and current > message_time:
                return False
            chat["last_message"] = dict(summary)
            chat["last_message_time"] = message_time
            return True

    def increment_unread(self, instance_id: str, chat_id: str) -> int:
        with self._lock:
            chat = self.chats[(instance_id, chat_id)]
            chat["unread_count"] += 1
            return chat["unread_count"]

    def reset_unread(self, instance_id: str, chat_id: str) -> None:
        with self._lock:
            chat = self.chats.get((instance_id, chat_id))
            if chat is not None:
                chat["unread_count"] = 0

    # Messages

    def insert_message_if_absent(self, instance_id: str, row: dict[str, Any]) -> bool:
        with self._lock:
            key = (instance_id, row["message_id"])
            if key in self.messages:
                return False
            stored = dict(row)
            stored["instance_id"] = instance_id
            stored["seq"] = next(self._seq)
            self.messages[key] = stored
            return True

    def find_message(self, instance_id: str, message_id: str) -> dict[str, Any] | None:
        with self._lock:
            message = self.messages.get((instance_id, message_id))
            return dict(message) if message else None

    def update_message_status(self, instance_id: str, message_id: str, status: str) -> bool:
        with self._lock:
            message = self.messages.get((instance_id, message_id))
            if message is None or message["status"] == status:
                return False
            message["status"] = status
            return True

    def existing_message_ids_for_chat(self, instance_id: str, chat_id: str) -> set[str]:
        with self._lock:
            return {
                m["message_id"]
                for (inst, _), m in self.messages.items()
                if inst == instance_id and m["chat_id"] == chat_id
            }

    def latest_message_for_chat(self, instance_id: str, chat_id: str) -> dict[str, Any] | None:
        with self._lock:
            rows = [
                m
                for (inst, _), m in self.messages.items()
                if inst == instance_id and m["chat_id"] == chat_id
            ]
            if not rows:
                return None
            return dict(max(rows, key=lambda m: (m["timestamp_msg"], m["seq"])))

    # Totals

    def count_chats(self, instance_id: str) -> int:
        with self._lock:
            return sum(1 for inst, _ in self.chats if inst == instance_id)

    def count_messages(self, instance_id: str) -> int:
        with self._lock:
            return sum(1 for inst, _ in self.messages if inst == instance_id)

    # Assertions

    def messages_for_chat(self, instance_id: str, chat_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(m)
                for (inst, _), m in self.messages.items()
                if inst == instance_id and m["chat_id"] == chat_id
            ]


class RecordingPublisher:
    """Publisher that keeps every (instance_id, event, payload)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def publish(self, instance_id: str, event_name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((instance_id, event_name, payload))

    def named(self, event_name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for _, name, payload in self.events if name == event_name]

    def names(self) -> list[str]:
        with self._lock:
            return [name for _, name, _ in self.events]


class FakeProvider:
    """Provider double serving canned chats, messages and group infos.

    `chats` is the full chat list; list_chats pages through it. `messages`
    maps a conversation id to its full message list. Set `fail_*`
    attributes to an exception to make calls raise.
    """

    def __init__(
        self,
        chats: list[dict[str, Any]] | None = None,
        messages: dict[str, list[dict[str, Any]]] | None = None,
        groups: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.chats = chats or []
        self.messages = messages or {}
        self.groups = groups or {}
        self.fail_list_chats: Exception | None = None
        self.fail_list_messages: dict[str, Exception] = {}
        self.fail_mark_read: Exception | None = None
        self.group_delay: Callable[[], None] | None = None
        self._lock = threading.Lock()
        self.calls: list[tuple[str, tuple]] = []

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))

    def calls_to(self, name: str) -> list[tuple]:
        with self._lock:
            return [args for call, args in self.calls if call == name]

    def list_chats(self, instance: str, page: int = 1, page_size: int = 100) -> Any:
        self._record("list_chats", instance, page, page_size)
        if self.fail_list_chats is not None:
            raise self.fail_list_chats
        start = (page - 1) * page_size
        return self.chats[start : start + page_size]

    def list_messages(
        self, instance: str, conversation_id: str, page: int = 1, page_size: int = 100
    ) -> Any:
        self._record("list_messages", instance, conversation_id, page, page_size)
        if conversation_id in self.fail_list_messages:
            raise self.fail_list_messages[conversation_id]
        records = self.messages.get(conversation_id, [])
        start = (page - 1) * page_size
        return {"messages": {"records": records[start : start + page_size]}}

    def get_group_info(self, instance: str, group_id: str) -> dict[str, Any] | None:
        self._record("get_group_info", instance, group_id)
        if self.group_delay is not None:
            self.group_delay()
        return self.groups.get(group_id)

    def set_webhook(self, instance: str, url: str) -> dict[str, Any]:
        self._record("set_webhook", instance, url)
        return {"webhook": {"url": url}}

    def set_websocket(self, instance: str) -> dict[str, Any]:
        self._record("set_websocket", instance)
        return {"websocket": {"enabled": True}}

    def mark_read(
        self, instance: str, conversation_id: str, message_ids: list[dict[str, Any]]
    ) -> dict[str, Any]:
        self._record("mark_read", instance, conversation_id, message_ids)
        if self.fail_mark_read is not None:
            raise self.fail_mark_read
        return {"message": "Read messages", "read": "success"}


class FakeTimer:
    """threading.Timer stand-in: records the call, runs only when fire() is called."""

    created: list["FakeTimer"] = []

    def __init__(self, interval: float, function: Callable, args: tuple = (), kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class ManualClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the redis.Redis calls the gateway makes.

    Values are str (decode_responses=True). Expiry is recorded in `ttls`
    but never enforced. Two service graphs sharing one FakeRedis model a
    public and a worker process on the same Redis server.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.values: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, float] = {}
        self.published: list[tuple[str, str]] = []
        self._pubsubs: list["FakePubSub"] = []

    # Strings

    def set(self, name: str, value: Any, ex: float | None = None, nx: bool = False) -> bool | None:
        with self._lock:
            if nx and name in self.values:
                return None
            self.values[name] = str(value)
            if ex is not None:
                self.ttls[name] = ex
            else:
                self.ttls.pop(name, None)
            return True

    def get(self, name: str) -> str | None:
        with self._lock:
            return self.values.get(name)

    def exists(self, *names: str) -> int:
        with self._lock:
            return sum(1 for n in names if n in self.values or n in self.zsets)

    def delete(self, *names: str) -> int:
        with self._lock:
            removed = 0
            for name in names:
                if self.values.pop(name, None) is not None or self.zsets.pop(name, None) is not None:
                    removed += 1
                self.ttls.pop(name, None)
            return removed

    def expire(self, name: str, time: float) -> bool:
        with self._lock:
            if not self.exists(name):
                return False
            self.ttls[name] = time
            return True

    # Sorted sets

    def zadd(self, name: str, mapping: dict[str, float]) -> int:
        with self._lock:
            zset = self.zsets.setdefault(name, {})
            added = sum(1 for member in mapping if member not in zset)
            zset.update(mapping)
            return added

    def zremrangebyscore(self, name: str, min: float, max: float) -> int:
        with self._lock:
            zset = self.zsets.get(name, {})
            doomed = [m for m, score in zset.items() if min <= score <= max]
            for member in doomed:
                del zset[member]
            return len(doomed)

    def zcard(self, name: str) -> int:
        with self._lock:
            return len(self.zsets.get(name, {}))

    def zrange(self, name: str, start: int, end: int, withscores: bool = False) -> list:
        with self._lock:
            ordered = sorted(self.zsets.get(name, {}).items(), key=lambda item: (item[1], item[0]))
            window = ordered[start:] if end == -1 else ordered[start:end + 1]
            if withscores:
                return [(member, score) for member, score in window]
            return [member for member, _ in window]

    def zrem(self, name: str, *members: str) -> int:
        with self._lock:
            zset = self.zsets.get(name, {})
            return sum(1 for m in members if zset.pop(m, None) is not None)

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    # Pub/sub

    def pubsub(self, ignore_subscribe_messages: bool = False) -> "FakePubSub":
        pubsub = FakePubSub(self)
        with self._lock:
            self._pubsubs.append(pubsub)
        return pubsub

    def publish(self, channel: str, message: str) -> int:
        with self._lock:
            self.published.append((channel, message))
            subscribers = list(self._pubsubs)
        return sum(1 for pubsub in subscribers if pubsub.deliver(channel, message))

    def _forget(self, pubsub: "FakePubSub") -> None:
        with self._lock:
            if pubsub in self._pubsubs:
                self._pubsubs.remove(pubsub)


class FakePipeline:
    """Queues commands and runs them together on execute()."""

    def __init__(self, server: FakeRedis) -> None:
        self._server = server
        self._commands: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str) -> Callable[..., "FakePipeline"]:
        def queue_command(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._commands.append((name, args, kwargs))
            return self

        return queue_command

    def execute(self) -> list[Any]:
        with self._server._lock:
            results = [
                getattr(self._server, name)(*args, **kwargs)
                for name, args, kwargs in self._commands
            ]
        self._commands = []
        return results


class FakePubSub:
    def __init__(self, server: FakeRedis) -> None:
        self._server = server
        self.patterns: set[str] = set()
        self.messages: "queue.Queue[dict[str, Any]]" = queue.Queue()
        self.closed = False

    def psubscribe(self, *patterns: str) -> None:
        self.patterns.update(patterns)

    def deliver(self, channel: str, data: str) -> bool:
        for pattern in self.patterns:
            if fnmatch.fnmatchcase(channel, pattern):
                self.messages.put(
                    {"type": "pmessage", "pattern": pattern, "channel": channel, "data": data}
                )
                return True
        return False

    def get_message(self, timeout: float = 0.0) -> dict[str, Any] | None:
        try:
            if timeout:
                return self.messages.get(timeout=timeout)
            return self.messages.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True
        self._server._forget(self)


class ScriptedSocketApp:
    """websocket.WebSocketApp stand-in that replays scripted sessions.

    Each session is {"frames": [...], "error": exc | None, "open": bool}.
    run_forever() plays the next session through the callbacks and returns
    as if the socket closed. `after_last` runs once the script is exhausted.
    """

    def __init__(self, sessions: list[dict[str, Any]], after_last: Callable[[], None]) -> None:
        self.sessions = list(sessions)
        self.after_last = after_last
        self.urls: list[str] = []
        self.headers: list[Any] = []
        self.closed = 0

    def __call__(self, url: str, *, header=None, on_open, on_message, on_error, on_close):
        self.urls.append(url)
        self.headers.append(header)
        script = self

        class _App:
            def run_forever(self, **kwargs: Any) -> None:
                if not script.sessions:
                    script.after_last()
                    return
                session = script.sessions.pop(0)
                if session.get("error") is not None:
                    on_error(self, session["error"])
                    return
                if session.get("open", True):
                    on_open(self)
                for frame in session.get("frames", []):
                    on_message(self, frame)
                on_close(self, 1000, "bye")

            def close(self) -> None:
                script.closed += 1

        return _App()


# Payload builders


def text_message(
    message_id: str,
    remote_jid: str,
    text: str = "hello",
    *,
    from_me: bool = False,
    timestamp: int = 1_700_000_000,
    push_name: str | None = "Alice",
    status: Any = None,
    participant: str | None = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me},
        "message": {"conversation": text},
        "messageType": "conversation",
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        record["pushName"] = push_name
    if status is not None:
        record["status"] = status
    if participant is not None:
        record["key"]["participant"] = participant
    return record


def chat_record(jid: str, **extra: Any) -> dict[str, Any]:
    record = {"remoteJid": jid}
    record.update(extra)
    return record


def webhook_payload(event: str, data: Any, instance: str = "acme") -> dict[str, Any]:
    return {
        "event": event,
        "instance": instance,
        "data": data,
        "date_time": utc_now().isoformat(),
    }
