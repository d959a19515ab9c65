"""Record reconciliation shared by bulk sync and live ingestion.

Both paths go through these helpers so a contact, chat or message looks
the same whether it arrived through a full sync or a webhook.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from wppgateway.infra.time import parse_iso, utc_now
from wppgateway.whatsapp.jid import is_group_id, local_part
from wppgateway.whatsapp.models import NormalizedMessage

from .gateway import ChatStore

# Group info keys carried into contacts.group_metadata
_GROUP_METADATA_KEYS = (
    "subject",
    "creation",
    "owner",
    "desc",
    "descOwner",
    "descId",
    "restrict",
    "announce",
    "size",
    "participants",
)


def group_metadata_from_info(info: dict[str, Any] | None) -> dict[str, Any] | None:
    """Project a provider group-info response onto the stored metadata shape."""
    if not info:
        return None
    metadata = {key: info.get(key) for key in _GROUP_METADATA_KEYS}
    participants = info.get("participants")
    if metadata["size"] is None and isinstance(participants, list):
        metadata["size"] = len(participants)
    metadata["fetchedAt"] = utc_now().isoformat()
    return metadata


def _without_fetched_at(metadata: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in metadata.items() if k != "fetchedAt"}


def _same_group_metadata(old: Any, new: dict[str, Any]) -> bool:
    if not isinstance(old, dict):
        return False
    return _without_fetched_at(old) == _without_fetched_at(new)


def contact_fields(
    jid: str,
    *,
    name: str | None = None,
    push_name: str | None = None,
    profile_pic_url: str | None = None,
    group_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Contact column values observed for a conversation. None means "not observed"."""
    is_group = is_group_id(jid)
    if is_group and group_metadata and group_metadata.get("subject"):
        name = group_metadata["subject"]
    return {
        "name": name,
        "push_name": None if is_group else push_name,
        "profile_pic_url": profile_pic_url,
        "is_group": is_group,
        "group_metadata": group_metadata if is_group else None,
    }


def ensure_contact(
    store: ChatStore,
    instance_id: str,
    jid: str,
    fields: dict[str, Any],
) -> tuple[dict[str, Any], bool]:
    """Find-or-create the contact for `jid`, then apply newer observed values.

    Returns:
        Tuple of (contact, created).
    """
    phone = local_part(jid)
    defaults = {k: v for k, v in fields.items() if v is not None}
    contact, created = store.find_or_create_contact(instance_id, phone, defaults)
    if created:
        return contact, True

    changes: dict[str, Any] = {}
    for column, value in fields.items():
        if value is None:
            continue
        if column == "group_metadata":
            if not _same_group_metadata(contact.get(column), value):
                changes[column] = value
        elif contact.get(column) != value:
            changes[column] = value

    if changes:
        store.update_contact(contact["id"], changes)
        contact = {**contact, **changes}
    return contact, False


def persist_message(
    store: ChatStore,
    instance_id: str,
    message: NormalizedMessage,
    *,
    contact_id: str | None,
    source: str,
) -> bool:
    """Insert the message unless its provider id is already stored. True if inserted."""
    row = message.to_row(source=source)
    row["contact_id"] = contact_id
    return store.insert_message_if_absent(instance_id, row)


def summary_from_row(row: dict[str, Any]) -> dict[str, Any]:
    """Chat last-message summary built from a stored message row."""
    timestamp = row.get("timestamp_msg")
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    return {
        "id": row.get("message_id"),
        "content": row.get("content") or "",
        "messageType": row.get("message_type") or "unknown",
        "fromMe": bool(row.get("from_me")),
        "timestamp": timestamp,
        "status": row.get("status"),
    }


def refresh_chat_summary(
    store: ChatStore, instance_id: str, chat_id: str
) -> dict[str, Any] | None:
    """Point the chat summary at the newest stored message of the chat.

    Returns:
        The summary written, or None if the chat has no stored messages.
    """
    latest = store.latest_message_for_chat(instance_id, chat_id)
    if latest is None:
        return None
    message_time = parse_iso(latest.get("timestamp_msg")) or utc_now()
    summary = summary_from_row(latest)
    store.apply_last_message(instance_id, chat_id, summary, message_time)
    return summary
