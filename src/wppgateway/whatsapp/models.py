"""WhatsApp message models shared by bulk sync and live ingestion."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

MessageType = Literal[
    "text",
    "image",
    "video",
    "audio",
    "document",
    "sticker",
    "location",
    "contact",
    "system",
    "unknown",
]

MessageStatus = Literal["sent", "delivered", "read", "error"]

ConnectionStatus = Literal["connecting", "connected", "disconnected", "qr_code", "error"]


@dataclass(frozen=True)
class MessageClassification:
    """Type and derived fields extracted from a provider message payload."""

    type: MessageType
    text_content: str
    media_path: str | None = None
    media_mime: str | None = None
    media_size: int | None = None
    location: dict[str, Any] | None = None
    sticker: dict[str, Any] | None = None


@dataclass(frozen=True)
class NormalizedMessage:
    """Provider message record after normalization.

    message_id + instance is the idempotency key.
    """

    message_id: str
    remote_jid: str
    from_me: bool
    participant: str | None
    push_name: str | None
    classification: MessageClassification
    status: MessageStatus
    timestamp: datetime
    quoted_message_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def message_type(self) -> MessageType:
        return self.classification.type

    @property
    def content(self) -> str:
        return self.classification.text_content

    def summary(self) -> dict[str, Any]:
        """Denormalized last-message snapshot stored on the chat."""
        return {
            "id": self.message_id,
            "content": self.content,
            "messageType": self.message_type,
            "fromMe": self.from_me,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
        }

    def metadata(self, source: str) -> dict[str, Any]:
        """Free-form metadata bag persisted alongside the message."""
        c = self.classification
        bag: dict[str, Any] = {
            "rawMessage": self.raw.get("message") if self.raw else None,
            "location": c.location,
            "sticker": c.sticker,
            "pushName": self.push_name,
            "source": source,
        }
        if c.media_path or c.media_mime or c.media_size:
            bag["media"] = {
                "path": c.media_path,
                "url": c.media_path,
                "mimetype": c.media_mime,
                "size": c.media_size,
            }
        return bag

    def to_row(self, *, source: str) -> dict[str, Any]:
        """Column values for the messages table (minus instance/chat/contact refs)."""
        c = self.classification
        return {
            "message_id": self.message_id,
            "from_me": self.from_me,
            "chat_id": self.remote_jid,
            "participant": self.participant,
            "message_type": self.message_type,
            "content": self.content,
            "media_url": c.media_path,
            "media_path": c.media_path,
            "media_size": c.media_size,
            "media_mime_type": c.media_mime,
            "timestamp_msg": self.timestamp,
            "status": self.status,
            "quoted_message_id": self.quoted_message_id,
            "metadata": self.metadata(source),
        }

    def formatted(self, *, source: str) -> dict[str, Any]:
        """Payload sent to browsers with message_received."""
        c = self.classification
        return {
            "id": self.message_id,
            "fromMe": self.from_me,
            "chatId": self.remote_jid,
            "remoteJid": self.remote_jid,
            "messageType": self.message_type,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "pushName": self.push_name,
            "participant": self.participant,
            "isGroupMessage": self.remote_jid.endswith("@g.us"),
            "source": source,
            "mediaPath": c.media_path,
            "mediaMimeType": c.media_mime,
            "location": c.location,
            "sticker": c.sticker,
            "quotedMessageId": self.quoted_message_id,
        }
