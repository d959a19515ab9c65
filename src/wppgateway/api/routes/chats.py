"""Chat actions: mark read, archive, pin.

Mark-read resets the local unread counter even when the Provider call
fails; the response says whether the Provider acknowledged it.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import mask_jid, safe_log_context
from wppgateway.whatsapp.jid import normalize_conversation_id

from ..services import Services, get_services

router = APIRouter(prefix="/instances", tags=["chats"])

logger = get_logger(__name__)


class ReadMessageRef(BaseModel):
    id: str
    from_me: bool = False


class MarkReadRequest(BaseModel):
    """Request body for POST /instances/{id}/chats/{chat_id}/read.

    Without message ids the chat's latest incoming message is marked.
    """

    message_ids: list[ReadMessageRef] = []


class ArchiveRequest(BaseModel):
    archived: bool = True


class PinRequest(BaseModel):
    pinned: bool = True


def _load_chat(services: Services, instance_id: str, chat_id: str) -> tuple[dict, dict]:
    instance = services.store.get_instance(instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="instance not found")
    conversation_id = normalize_conversation_id(chat_id)
    if conversation_id is None:
        raise HTTPException(status_code=400, detail="invalid chat id")
    chat = services.store.find_chat(instance_id, conversation_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="chat not found")
    return instance, chat


def _mark_read(services: Services, instance_id: str, chat_id: str, body: MarkReadRequest) -> dict:
    instance, chat = _load_chat(services, instance_id, chat_id)
    conversation_id = chat["chat_id"]

    refs: list[dict[str, Any]] = [{"id": ref.id, "fromMe": ref.from_me} for ref in body.message_ids]
    if not refs:
        latest = services.store.latest_message_for_chat(instance_id, conversation_id)
        if latest is not None and not latest.get("from_me"):
            refs = [{"id": latest["message_id"], "fromMe": False}]

    acknowledged = False
    if refs:
        try:
            services.provider.mark_read(instance["evolution_instance_name"], conversation_id, refs)
            acknowledged = True
        except Exception as exc:
            logger.warning(
                "provider mark-read failed",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance_id,
                        chat=mask_jid(conversation_id),
                        error_type=type(exc).__name__,
                    )
                },
            )

    services.store.reset_unread(instance_id, conversation_id)
    services.publisher.publish(
        instance_id, "chat_unread_updated", {"chatId": conversation_id, "unreadCount": 0}
    )
    return {
        "chatId": conversation_id,
        "unreadCount": 0,
        "markedMessages": len(refs),
        "providerAcknowledged": acknowledged,
    }


def _set_flag(services: Services, instance_id: str, chat_id: str, flag: str, value: bool) -> dict:
    _, chat = _load_chat(services, instance_id, chat_id)
    conversation_id = chat["chat_id"]
    services.store.update_chat(instance_id, conversation_id, {flag: value})
    services.publisher.publish(
        instance_id, "chats_updated", {"chats": [{"chatId": conversation_id, flag: value}]}
    )
    return {"chatId": conversation_id, flag: value}


@router.post("/{instance_id}/chats/{chat_id}/read")
async def mark_chat_read(instance_id: str, chat_id: str, body: MarkReadRequest | None = None) -> dict:
    """Mark a chat read at the Provider and reset its unread counter."""
    return await run_in_threadpool(
        _mark_read, get_services(), instance_id, chat_id, body or MarkReadRequest()
    )


@router.post("/{instance_id}/chats/{chat_id}/archive")
async def archive_chat(instance_id: str, chat_id: str, body: ArchiveRequest | None = None) -> dict:
    value = (body or ArchiveRequest()).archived
    return await run_in_threadpool(_set_flag, get_services(), instance_id, chat_id, "archived", value)


@router.post("/{instance_id}/chats/{chat_id}/pin")
async def pin_chat(instance_id: str, chat_id: str, body: PinRequest | None = None) -> dict:
    value = (body or PinRequest()).pinned
    return await run_in_threadpool(_set_flag, get_services(), instance_id, chat_id, "pinned", value)
