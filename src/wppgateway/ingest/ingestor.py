"""Event ingestor - applies one live provider event to the store.

Safe to call from many threads at once: shared state is only touched
through the group cache and the store's atomic operations
(insert_message_if_absent, increment_unread, apply_last_message).

ingest() never raises; failures are logged (with the request's correlation
id) and the next event is processed normally.
"""

from __future__ import annotations

from typing import Any, Callable

from wppgateway.fanout import Publisher
from wppgateway.infra.time import utc_now
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import mask_jid, safe_log_context
from wppgateway.provider.client import Provider
from wppgateway.store.gateway import ChatStore
from wppgateway.store.reconcile import (
    contact_fields,
    ensure_contact,
    group_metadata_from_info,
    persist_message,
)
from wppgateway.sync.followup import FollowUpSync, cancel_pending_sync, schedule_sync
from wppgateway.tasks.client import TasksClient
from wppgateway.whatsapp.classify import normalize_message_record, normalize_message_status
from wppgateway.whatsapp.group_cache import GroupMetadataCache
from wppgateway.whatsapp.jid import (
    first_identifier,
    is_group_id,
    local_part,
    normalize_conversation_id,
)
from wppgateway.whatsapp.models import NormalizedMessage

from .events import (
    ApplicationStartup,
    ChatsChanged,
    ConnectionStateChanged,
    ContactsChanged,
    IngestEvent,
    MessagesUpserted,
    MessageStatusChanged,
    PresenceChanged,
    QRCodeUpdated,
    UnknownEvent,
    map_connection_state,
)

logger = get_logger(__name__)

MESSAGE_SOURCE = "webhook"

# Higher rank wins; "error" only replaces "sent"
_STATUS_RANK = {"sent": 1, "delivered": 2, "read": 3}


def status_supersedes(current: str | None, new: str) -> bool:
    """True if `new` should replace the stored status."""
    if current == new:
        return False
    if current is None or current == "error":
        return True
    if new == "error":
        return current == "sent"
    return _STATUS_RANK.get(new, 0) > _STATUS_RANK.get(current, 0)


class EventIngestor:
    def __init__(
        self,
        store: ChatStore,
        provider: Provider,
        cache: GroupMetadataCache,
        publisher: Publisher,
        tasks: TasksClient,
        followup: FollowUpSync,
        *,
        settle_delay: float = 3.0,
    ) -> None:
        self._store = store
        self._provider = provider
        self._cache = cache
        self._publisher = publisher
        self._tasks = tasks
        self._followup = followup
        self._settle_delay = settle_delay

        self._handlers: dict[type, Callable[[dict[str, Any], Any], dict[str, Any]]] = {
            QRCodeUpdated: self._on_qrcode,
            ConnectionStateChanged: self._on_connection,
            MessagesUpserted: self._on_messages,
            MessageStatusChanged: self._on_status,
            ContactsChanged: self._on_contacts,
            ChatsChanged: self._on_chats,
            PresenceChanged: self._on_presence,
            ApplicationStartup: self._on_startup,
            UnknownEvent: self._on_unknown,
        }

    @property
    def handled_types(self) -> frozenset[type]:
        return frozenset(self._handlers)

    def ingest(self, instance: dict[str, Any], event: IngestEvent) -> dict[str, Any] | None:
        """Apply one event for one instance.

        Args:
            instance: Instance record (needs "id" and "evolution_instance_name").
            event: Parsed event.

        Returns:
            Small outcome dict (counts / status), or None if handling failed.
        """
        event_type = type(event).__name__
        try:
            handler = self._handlers[type(event)]
            return handler(instance, event)
        except Exception:
            logger.exception(
                "event ingestion failed",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance.get("id"), event_type=event_type
                    )
                },
            )
            return None

    # Messages

    def _on_messages(self, instance: dict[str, Any], event: MessagesUpserted) -> dict[str, Any]:
        outcome = {"created": 0, "duplicates": 0, "invalid": 0, "failed": 0}
        for record in event.messages:
            message = normalize_message_record(record)
            if message is None:
                outcome["invalid"] += 1
                logger.warning(
                    "message skipped: no id or conversation",
                    extra={"extra_fields": safe_log_context(instanceId=instance["id"])},
                )
                continue
            try:
                created = self._ingest_message(instance, message, record)
            except Exception as exc:
                outcome["failed"] += 1
                logger.error(
                    "message ingestion failed",
                    extra={
                        "extra_fields": safe_log_context(
                            instanceId=instance["id"],
                            chatId=mask_jid(message.remote_jid),
                            error_type=type(exc).__name__,
                        )
                    },
                )
                continue
            outcome["created" if created else "duplicates"] += 1
        return outcome

    def _group_metadata(self, instance: dict[str, Any], jid: str) -> dict[str, Any] | None:
        provider_name = instance["evolution_instance_name"]
        info = self._cache.get_group_info(
            provider_name, jid, lambda: self._provider.get_group_info(provider_name, jid)
        )
        return group_metadata_from_info(info)

    def _ingest_message(
        self,
        instance: dict[str, Any],
        message: NormalizedMessage,
        record: dict[str, Any],
    ) -> bool:
        instance_id = instance["id"]
        jid = message.remote_jid

        metadata = self._group_metadata(instance, jid) if is_group_id(jid) else None
        fields = contact_fields(
            jid,
            # pushName on our own messages is our profile name, not the contact's
            push_name=None if message.from_me else message.push_name,
            profile_pic_url=record.get("profilePicUrl") or None,
            group_metadata=metadata,
        )
        contact, _ = ensure_contact(self._store, instance_id, jid, fields)

        chat, chat_created = self._store.find_or_create_chat(
            instance_id, jid, {"contact_id": contact["id"], "unread_count": 0}
        )
        if not chat_created and not chat.get("contact_id"):
            self._store.update_chat(instance_id, jid, {"contact_id": contact["id"]})

        inserted = persist_message(
            self._store, instance_id, message, contact_id=contact["id"], source=MESSAGE_SOURCE
        )
        if not inserted:
            self._correct_status(instance_id, message.message_id, jid, message.status)
            return False

        self._store.apply_last_message(instance_id, jid, message.summary(), message.timestamp)

        if not message.from_me:
            unread = self._store.increment_unread(instance_id, jid)
            self._publisher.publish(
                instance_id, "chat_unread_updated", {"chatId": jid, "unreadCount": unread}
            )

        self._publisher.publish(
            instance_id,
            "message_received",
            {"chatId": jid, "message": message.formatted(source=MESSAGE_SOURCE)},
        )
        return True

    def _correct_status(
        self, instance_id: str, message_id: str, chat_id: str | None, status: str
    ) -> bool:
        existing = self._store.find_message(instance_id, message_id)
        if existing is None or not status_supersedes(existing.get("status"), status):
            return False
        if not self._store.update_message_status(instance_id, message_id, status):
            return False
        self._publisher.publish(
            instance_id,
            "message_status_update",
            {
                "chatId": chat_id or existing.get("chat_id"),
                "messageId": message_id,
                "status": status,
            },
        )
        return True

    def _on_status(self, instance: dict[str, Any], event: MessageStatusChanged) -> dict[str, Any]:
        updated = 0
        for update in event.updates:
            status = normalize_message_status(update.status, update.from_me)
            if self._correct_status(instance["id"], update.message_id, update.remote_jid, status):
                updated += 1
        return {"updated": updated, "received": len(event.updates)}

    # Connection

    def _on_connection(
        self, instance: dict[str, Any], event: ConnectionStateChanged
    ) -> dict[str, Any]:
        instance_id = instance["id"]
        status = map_connection_state(event.state)

        fields: dict[str, Any] = {"status": status}
        if status == "connected":
            fields["qr_code"] = None
            fields["last_seen"] = utc_now()
            if event.profile_name:
                fields["profile_name"] = event.profile_name
            if event.owner_jid:
                fields["phone"] = local_part(event.owner_jid)
        self._store.update_instance(instance_id, fields)

        self._publisher.publish(
            instance_id,
            "connection_update",
            {
                "instanceId": instance_id,
                "status": status,
                "profileName": fields.get("profile_name", instance.get("profile_name")),
                "phone": fields.get("phone", instance.get("phone")),
                "statusReason": event.status_reason,
            },
        )

        sync_scheduled = False
        if status == "connected":
            sync_scheduled = schedule_sync(
                self._tasks,
                self._followup,
                instance_id,
                delay_seconds=self._settle_delay,
                reason="connected",
            )
        elif status == "disconnected":
            cancel_pending_sync(self._tasks, instance_id)

        logger.info(
            "connection state changed",
            extra={
                "extra_fields": safe_log_context(
                    instanceId=instance_id, status=status, sync_scheduled=sync_scheduled
                )
            },
        )
        return {"status": status, "syncScheduled": sync_scheduled}

    def _on_qrcode(self, instance: dict[str, Any], event: QRCodeUpdated) -> dict[str, Any]:
        instance_id = instance["id"]
        self._store.update_instance(
            instance_id,
            {"status": "qr_code", "qr_code": event.qr_code_base64 or event.qr_code},
        )
        self._publisher.publish(
            instance_id,
            "qrcode_updated",
            {
                "instanceId": instance_id,
                "qrCode": event.qr_code,
                "qrCodeBase64": event.qr_code_base64,
                "pairingCode": event.pairing_code,
            },
        )
        return {"status": "qr_code"}

    # Contacts / chats / presence

    def _on_contacts(self, instance: dict[str, Any], event: ContactsChanged) -> dict[str, Any]:
        instance_id = instance["id"]
        changed: list[dict[str, Any]] = []
        for record in event.contacts:
            jid = normalize_conversation_id(first_identifier(record, "remoteJid", "id", "jid"))
            if jid is None:
                continue
            fields = contact_fields(
                jid,
                name=record.get("name") or record.get("subject") or None,
                push_name=record.get("pushName") or None,
                profile_pic_url=record.get("profilePicUrl") or record.get("imgUrl") or None,
            )
            if is_group_id(jid):
                # group metadata only comes from group info lookups
                fields.pop("group_metadata")
            contact, _ = ensure_contact(self._store, instance_id, jid, fields)
            changed.append(
                {
                    "chatId": jid,
                    "name": contact.get("name"),
                    "pushName": contact.get("push_name"),
                    "profilePicUrl": contact.get("profile_pic_url"),
                }
            )
        if changed:
            self._publisher.publish(instance_id, "contacts_updated", {"contacts": changed})
        return {"updated": len(changed)}

    def _on_chats(self, instance: dict[str, Any], event: ChatsChanged) -> dict[str, Any]:
        instance_id = instance["id"]
        changed: list[dict[str, Any]] = []
        for record in event.chats:
            jid = normalize_conversation_id(first_identifier(record, "remoteJid", "id", "jid"))
            if jid is None or self._store.find_chat(instance_id, jid) is None:
                continue
            fields: dict[str, Any] = {}
            unread = record.get("unreadCount", record.get("unreadMessages"))
            if isinstance(unread, int) and not isinstance(unread, bool):
                fields["unread_count"] = max(0, unread)
            for flag in ("pinned", "archived", "muted"):
                if flag in record:
                    fields[flag] = bool(record[flag])
            if not fields:
                continue
            self._store.update_chat(instance_id, jid, fields)
            changed.append({"chatId": jid, **_camel(fields)})
        if changed:
            self._publisher.publish(instance_id, "chats_updated", {"chats": changed})
        return {"updated": len(changed)}

    def _on_presence(self, instance: dict[str, Any], event: PresenceChanged) -> dict[str, Any]:
        if event.conversation_id:
            self._publisher.publish(
                instance["id"],
                "presence_updated",
                {"chatId": event.conversation_id, "presences": event.presences},
            )
        return {"published": bool(event.conversation_id)}

    def _on_startup(self, instance: dict[str, Any], event: ApplicationStartup) -> dict[str, Any]:
        logger.info(
            "provider application started",
            extra={"extra_fields": safe_log_context(instanceId=instance["id"])},
        )
        return {}

    def _on_unknown(self, instance: dict[str, Any], event: UnknownEvent) -> dict[str, Any]:
        logger.info(
            "unhandled provider event ignored",
            extra={"extra_fields": safe_log_context(instanceId=instance["id"], event=event.name)},
        )
        return {"ignored": True}


def _camel(fields: dict[str, Any]) -> dict[str, Any]:
    names = {"unread_count": "unreadCount"}
    return {names.get(k, k): v for k, v in fields.items()}

