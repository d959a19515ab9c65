"""Evolution API message payloads - classify and normalize.

The provider sends message content as a tagged union: exactly one of
`conversation`, `extendedTextMessage`, `imageMessage`, ... is expected to be
set. classify_message() picks one branch in a fixed priority order so the
same payload always yields the same type and content.
"""

from datetime import datetime
from typing import Any

from wppgateway.infra.time import from_epoch_seconds, utc_now

from .jid import normalize_conversation_id
from .models import MessageClassification, MessageStatus, NormalizedMessage

_ALLOWED_STATUSES: frozenset[str] = frozenset({"sent", "delivered", "read", "error"})

# Provider ack names (Baileys) -> stored status. None means "use fallback".
_ACK_STATUSES: dict[str, str | None] = {
    "error": "error",
    "pending": None,
    "created": None,
    "queued": None,
    "received": None,
    "server_ack": "sent",
    "delivery_ack": "delivered",
    "read": "read",
    "played": "read",
}

# Numeric ack codes as sent by some provider versions
_ACK_CODES: dict[int, str | None] = {
    0: "error",
    1: None,
    2: "sent",
    3: "delivered",
    4: "read",
    5: "read",
}

# Payload branches that carry no user-visible content
_SYSTEM_KINDS: frozenset[str] = frozenset(
    {
        "protocolMessage",
        "reactionMessage",
        "senderKeyDistributionMessage",
        "messageContextInfo",
        "pollUpdateMessage",
        "ephemeralSetting",
    }
)

_MEDIA_KINDS: tuple[str, ...] = (
    "imageMessage",
    "videoMessage",
    "audioMessage",
    "documentMessage",
    "stickerMessage",
)

_CAPTIONED: tuple[tuple[str, str], ...] = (
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("documentMessage", "document"),
)

_PLACEHOLDERS: dict[str, str] = {
    "image": "📷 Image",
    "video": "🎥 Video",
    "audio": "🎵 Audio",
    "sticker": "😄 Sticker",
    "system": "⚙️ System message",
}


def _branch(message: dict[str, Any], kind: str) -> dict[str, Any] | None:
    value = message.get(kind)
    return value if isinstance(value, dict) else None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _media_size(value: Any) -> int | None:
    # fileLength may arrive as int, numeric string or {"low": n, "high": 0}
    if isinstance(value, dict):
        value = value.get("low")
    try:
        size = int(value)
    except (TypeError, ValueError):
        return None
    return size or None


def extract_location(message: dict[str, Any] | None) -> dict[str, Any] | None:
    """Location metadata with a maps URL, or None when coordinates are missing."""
    location = _branch(message or {}, "locationMessage")
    if location is None:
        return None

    latitude = _number(
        location.get("degreesLatitude", location.get("latitude", location.get("lat")))
    )
    longitude = _number(
        location.get("degreesLongitude", location.get("longitude", location.get("lng")))
    )
    if latitude is None or longitude is None:
        return None

    description = location.get("caption") or location.get("description") or None
    return {
        "latitude": latitude,
        "longitude": longitude,
        "label": location.get("name") or location.get("address") or description,
        "thumbnail": location.get("jpegThumbnail") or None,
        "url": f"https://www.google.com/maps?q={latitude},{longitude}",
        "address": location.get("address") or None,
        "name": location.get("name") or None,
        "description": description,
    }


def extract_sticker(message: dict[str, Any] | None) -> dict[str, Any] | None:
    """Sticker metadata needed to render or download the sticker later."""
    sticker = _branch(message or {}, "stickerMessage")
    if sticker is None:
        return None
    return {
        "isAnimated": bool(sticker.get("isAnimated")),
        "isLottie": bool(sticker.get("isLottie")),
        "mimetype": sticker.get("mimetype") or "image/webp",
        "fileSha256": sticker.get("fileSha256") or None,
        "fileEncSha256": sticker.get("fileEncSha256") or None,
        "mediaKey": sticker.get("mediaKey") or None,
        "fileLength": sticker.get("fileLength") or None,
        "directPath": sticker.get("directPath") or None,
    }


def _media_fields(message: dict[str, Any]) -> tuple[str | None, str | None, int | None]:
    for kind in _MEDIA_KINDS:
        media = _branch(message, kind)
        if media is None:
            continue
        mime = media.get("mimetype") or ("image/webp" if kind == "stickerMessage" else None)
        return media.get("url") or None, mime, _media_size(media.get("fileLength"))
    return None, None, None


def _location_content(message: dict[str, Any], location: dict[str, Any] | None) -> str:
    if location:
        if location.get("label"):
            return f"📍 {location['label']}"
        return f"📍 {location['latitude']:.6f}, {location['longitude']:.6f}"
    return "📍 Location"


def classify_message(
    message: dict[str, Any] | None,
    message_type_hint: str | None = None,
) -> MessageClassification:
    """Classify a message-content payload into one type plus derived fields.

    Priority: conversation text > extended text > media caption > bare media
    > location > contact > sticker > unknown.

    Args:
        message: The `message` object of a provider record.
        message_type_hint: Record-level `messageType`, only consulted when
            no content branch matched (e.g. "protocolMessage").

    Returns:
        MessageClassification. Never raises.
    """
    if not isinstance(message, dict) or not message:
        return MessageClassification(type="unknown", text_content="")

    media_path, media_mime, media_size = _media_fields(message)
    location = extract_location(message)
    sticker = extract_sticker(message)

    def result(kind: str, content: str) -> MessageClassification:
        return MessageClassification(
            type=kind,  # type: ignore[arg-type]
            text_content=content,
            media_path=media_path,
            media_mime=media_mime,
            media_size=media_size,
            location=location,
            sticker=sticker,
        )

    conversation = _text(message.get("conversation"))
    if conversation:
        return result("text", conversation)

    extended = _branch(message, "extendedTextMessage")
    if extended and _text(extended.get("text")):
        return result("text", extended["text"])

    for kind, message_type in _CAPTIONED:
        branch = _branch(message, kind)
        if branch and _text(branch.get("caption")):
            return result(message_type, branch["caption"])

    if _branch(message, "imageMessage") is not None:
        return result("image", _PLACEHOLDERS["image"])
    if _branch(message, "videoMessage") is not None:
        return result("video", _PLACEHOLDERS["video"])
    if _branch(message, "audioMessage") is not None:
        return result("audio", _PLACEHOLDERS["audio"])
    document = _branch(message, "documentMessage")
    if document is not None:
        return result("document", f"📄 {document.get('fileName') or 'Document'}")

    if _branch(message, "locationMessage") is not None:
        return result("location", _location_content(message, location))

    contact = _branch(message, "contactMessage")
    if contact is not None:
        return result("contact", f"👤 {contact.get('displayName') or 'Contact'}")
    contacts = _branch(message, "contactsArrayMessage")
    if contacts is not None:
        return result("contact", f"👤 {contacts.get('displayName') or 'Contacts'}")

    if _branch(message, "stickerMessage") is not None:
        return result("sticker", _PLACEHOLDERS["sticker"])

    hint = (message_type_hint or "").strip()
    if hint in _SYSTEM_KINDS or hint.lower() in ("system", "notification") or (
        set(message) <= _SYSTEM_KINDS
    ):
        return result("system", _PLACEHOLDERS["system"])

    return result("unknown", "Message")


def normalize_message_status(status: Any, from_me: bool = False) -> MessageStatus:
    """Map a provider status/ack onto sent|delivered|read|error.

    Unknown, missing or in-flight statuses fall back to "sent" for our own
    messages and "delivered" for received ones.
    """
    fallback: MessageStatus = "sent" if from_me else "delivered"

    if status is None or isinstance(status, bool):
        return fallback

    if isinstance(status, int):
        mapped = _ACK_CODES.get(status)
        return mapped or fallback  # type: ignore[return-value]

    candidate = str(status).strip().lower()
    if not candidate:
        return fallback
    if candidate.isdigit():
        return normalize_message_status(int(candidate), from_me)
    if candidate in _ALLOWED_STATUSES:
        return candidate  # type: ignore[return-value]
    return _ACK_STATUSES.get(candidate) or fallback  # type: ignore[return-value]


def _timestamp(record: dict[str, Any], message: dict[str, Any]) -> datetime:
    raw = record.get("messageTimestamp")
    if raw is None:
        raw = message.get("messageTimestamp", message.get("timestamp"))
    if isinstance(raw, dict):
        raw = raw.get("low")
    return from_epoch_seconds(raw) or utc_now()


def _quoted_id(message: dict[str, Any]) -> str | None:
    for kind in ("extendedTextMessage", *_MEDIA_KINDS):
        branch = _branch(message, kind)
        if branch is None:
            continue
        context = branch.get("contextInfo")
        if isinstance(context, dict):
            quoted = context.get("stanzaId") or context.get("stanzaID")
            if quoted:
                return str(quoted)
    return None


def normalize_message_record(record: Any) -> NormalizedMessage | None:
    """Normalize one provider message record (webhook or findMessages item).

    Returns None when the record has no usable id or conversation id; the
    caller counts it as skipped.
    """
    if not isinstance(record, dict):
        return None

    key = record.get("key") if isinstance(record.get("key"), dict) else {}
    remote_jid = normalize_conversation_id(key.get("remoteJid") or record.get("remoteJid"))
    message_id = key.get("id") or record.get("id")

    if not remote_jid or not isinstance(message_id, str) or not message_id.strip():
        return None

    message = record.get("message") if isinstance(record.get("message"), dict) else {}
    from_me = bool(key.get("fromMe") or record.get("fromMe"))
    classification = classify_message(message, record.get("messageType"))
    participant = key.get("participant") or record.get("participant") or None

    return NormalizedMessage(
        message_id=message_id.strip(),
        remote_jid=remote_jid,
        from_me=from_me,
        participant=participant,
        push_name=record.get("pushName") or message.get("pushName") or None,
        classification=classification,
        status=normalize_message_status(record.get("status") or key.get("status"), from_me),
        timestamp=_timestamp(record, message),
        quoted_message_id=_quoted_id(message),
        raw=record,
    )


def extract_records(payload: Any) -> list[dict[str, Any]]:
    """Pull the list of records out of the shapes findMessages/findChats return."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []

    for key in ("messages", "data", "chats"):
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        if isinstance(value, dict) and isinstance(value.get("records"), list):
            return [item for item in value["records"] if isinstance(item, dict)]

    if isinstance(payload.get("records"), list):
        return [item for item in payload["records"] if isinstance(item, dict)]
    return []
