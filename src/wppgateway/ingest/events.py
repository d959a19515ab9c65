"""Live provider events as a closed set of types.

parse_event() turns a webhook body into exactly one of the event classes in
EVENT_TYPES. The ingestor dispatches on the class, so adding an event kind
means adding a class here and a handler there.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from wppgateway.whatsapp.jid import first_identifier, normalize_conversation_id
from wppgateway.whatsapp.models import ConnectionStatus


class InvalidEventError(ValueError):
    """Webhook body is not a provider event."""


@dataclass(frozen=True)
class QRCodeUpdated:
    qr_code: str | None
    qr_code_base64: str | None = None
    pairing_code: str | None = None


@dataclass(frozen=True)
class ConnectionStateChanged:
    state: str
    status_reason: int | None = None
    profile_name: str | None = None
    owner_jid: str | None = None
    profile_pic_url: str | None = None


@dataclass(frozen=True)
class MessagesUpserted:
    messages: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class StatusUpdate:
    message_id: str
    remote_jid: str | None
    from_me: bool
    status: Any


@dataclass(frozen=True)
class MessageStatusChanged:
    updates: tuple[StatusUpdate, ...]


@dataclass(frozen=True)
class ContactsChanged:
    contacts: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class ChatsChanged:
    chats: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class PresenceChanged:
    conversation_id: str | None
    presences: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplicationStartup:
    pass


@dataclass(frozen=True)
class UnknownEvent:
    name: str


IngestEvent = Union[
    QRCodeUpdated,
    ConnectionStateChanged,
    MessagesUpserted,
    MessageStatusChanged,
    ContactsChanged,
    ChatsChanged,
    PresenceChanged,
    ApplicationStartup,
    UnknownEvent,
]

EVENT_TYPES: tuple[type, ...] = (
    QRCodeUpdated,
    ConnectionStateChanged,
    MessagesUpserted,
    MessageStatusChanged,
    ContactsChanged,
    ChatsChanged,
    PresenceChanged,
    ApplicationStartup,
    UnknownEvent,
)

_CONNECTION_STATES: dict[str, ConnectionStatus] = {
    "open": "connected",
    "connected": "connected",
    "connecting": "connecting",
    "close": "disconnected",
    "closed": "disconnected",
    "disconnected": "disconnected",
    "qr": "qr_code",
    "qrcode": "qr_code",
    "qr_code": "qr_code",
    "error": "error",
    "refused": "error",
}


def map_connection_state(state: Any) -> ConnectionStatus:
    """Provider connection state -> stored status. Unknown states mean disconnected."""
    if not isinstance(state, str):
        return "disconnected"
    return _CONNECTION_STATES.get(state.strip().lower(), "disconnected")


def normalize_event_name(name: Any) -> str:
    """Canonical event name: messages.upsert and MESSAGES_UPSERT both give MESSAGES_UPSERT."""
    if not isinstance(name, str):
        return ""
    return name.strip().upper().replace(".", "_").replace("-", "_")


def _as_items(data: Any, *list_keys: str) -> tuple[dict[str, Any], ...]:
    if isinstance(data, list):
        return tuple(item for item in data if isinstance(item, dict))
    if isinstance(data, dict):
        for key in list_keys:
            value = data.get(key)
            if isinstance(value, list):
                return tuple(item for item in value if isinstance(item, dict))
        return (data,) if data else ()
    return ()


def _parse_qrcode(data: Any) -> QRCodeUpdated:
    data = data if isinstance(data, dict) else {}
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        return QRCodeUpdated(
            qr_code=qrcode.get("code") or None,
            qr_code_base64=qrcode.get("base64") or None,
            pairing_code=qrcode.get("pairingCode") or None,
        )
    if isinstance(qrcode, str) and qrcode:
        is_image = qrcode.startswith("data:image")
        return QRCodeUpdated(
            qr_code=None if is_image else qrcode,
            qr_code_base64=qrcode if is_image else None,
        )
    return QRCodeUpdated(qr_code=data.get("code") or None, qr_code_base64=data.get("base64") or None)


def _parse_connection(data: Any) -> ConnectionStateChanged:
    data = data if isinstance(data, dict) else {}
    reason = data.get("statusReason")
    return ConnectionStateChanged(
        state=str(data.get("state") or data.get("connection") or ""),
        status_reason=reason if isinstance(reason, int) and not isinstance(reason, bool) else None,
        profile_name=data.get("profileName") or None,
        owner_jid=first_identifier(data, "wuid", "ownerJid", "owner"),
        profile_pic_url=data.get("profilePictureUrl") or data.get("profilePicUrl") or None,
    )


def _status_update(item: dict[str, Any]) -> StatusUpdate | None:
    key = item.get("key") if isinstance(item.get("key"), dict) else {}
    message_id = key.get("id") or item.get("keyId") or item.get("id")
    if not isinstance(message_id, str) or not message_id:
        return None
    update = item.get("update") if isinstance(item.get("update"), dict) else {}
    status = update.get("status")
    if status is None:
        status = item.get("statusCode", item.get("status"))
    return StatusUpdate(
        message_id=message_id,
        remote_jid=normalize_conversation_id(key.get("remoteJid") or item.get("remoteJid")),
        from_me=bool(key.get("fromMe", item.get("fromMe"))),
        status=status,
    )


def parse_event(payload: Any) -> IngestEvent:
    """Build the typed event for a webhook body.

    Raises:
        InvalidEventError: If the body is not an object with an event name.
    """
    if not isinstance(payload, dict):
        raise InvalidEventError("event payload must be an object")
    name = normalize_event_name(payload.get("event") or payload.get("type"))
    if not name:
        raise InvalidEventError("event name missing")

    data = payload.get("data")

    if name == "QRCODE_UPDATED":
        return _parse_qrcode(data)
    if name == "CONNECTION_UPDATE":
        return _parse_connection(data)
    if name in ("MESSAGES_UPSERT", "MESSAGES_SET"):
        return MessagesUpserted(messages=_as_items(data, "messages"))
    if name == "MESSAGES_UPDATE":
        updates = (_status_update(item) for item in _as_items(data, "updates", "messages"))
        return MessageStatusChanged(updates=tuple(u for u in updates if u is not None))
    if name in ("CONTACTS_UPSERT", "CONTACTS_UPDATE", "CONTACTS_SET"):
        return ContactsChanged(contacts=_as_items(data, "contacts"))
    if name in ("CHATS_UPSERT", "CHATS_UPDATE", "CHATS_SET"):
        return ChatsChanged(chats=_as_items(data, "chats"))
    if name == "PRESENCE_UPDATE":
        data = data if isinstance(data, dict) else {}
        presences = data.get("presences")
        return PresenceChanged(
            conversation_id=normalize_conversation_id(data.get("id") or data.get("remoteJid")),
            presences=presences if isinstance(presences, dict) else {},
        )
    if name == "APPLICATION_STARTUP":
        return ApplicationStartup()
    return UnknownEvent(name=name)
