"""Evolution API client.

Security: never log message text or recipient numbers. Only instance names,
paths, status codes and hashed/masked identifiers.
"""

from __future__ import annotations

from typing import Any, Protocol

import requests

from wppgateway.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import mask_jid, safe_log_context
from wppgateway.settings import Settings, get_settings

from .errors import ProviderError
from .retry import RetryPolicy

logger = get_logger(__name__)

# Events the gateway subscribes to when (re)establishing the webhook
WEBHOOK_EVENTS: tuple[str, ...] = (
    "APPLICATION_STARTUP",
    "QRCODE_UPDATED",
    "CONNECTION_UPDATE",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CONTACTS_UPSERT",
    "CONTACTS_UPDATE",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "PRESENCE_UPDATE",
)

# Events requested on the push socket; a superset of the webhook list
WEBSOCKET_EVENTS: tuple[str, ...] = (
    "APPLICATION_STARTUP",
    "QRCODE_UPDATED",
    "CONNECTION_UPDATE",
    "MESSAGES_SET",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "MESSAGES_DELETE",
    "SEND_MESSAGE",
    "CONTACTS_SET",
    "CONTACTS_UPSERT",
    "CONTACTS_UPDATE",
    "CHATS_SET",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "CHATS_DELETE",
    "GROUPS_UPSERT",
    "GROUP_UPDATE",
    "GROUP_PARTICIPANTS_UPDATE",
    "PRESENCE_UPDATE",
)


class Provider(Protocol):
    """Provider operations used by sync and ingestion."""

    def list_chats(self, instance: str, page: int, page_size: int) -> Any: ...

    def list_messages(
        self, instance: str, conversation_id: str, page: int, page_size: int
    ) -> Any: ...

    def get_group_info(self, instance: str, group_id: str) -> dict[str, Any] | None: ...

    def set_webhook(self, instance: str, url: str) -> dict[str, Any]: ...

    def set_websocket(self, instance: str) -> dict[str, Any]: ...

    def mark_read(
        self, instance: str, conversation_id: str, message_ids: list[dict[str, Any]]
    ) -> dict[str, Any]: ...


class EvolutionClient:
    """HTTP client for one Evolution API server (all instances)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"apikey": api_key, "Content-Type": "application/json"})

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "EvolutionClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.evolution_base_url,
            api_key=settings.evolution_api_key,
            timeout=settings.evolution_timeout,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_ID_HEADER] = correlation_id

        try:
            response = self._session.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderError(f"{method} {path} timed out", code="ETIMEDOUT") from exc
        except requests.ConnectionError as exc:
            raise ProviderError(f"{method} {path} connection failed", code="ECONNRESET") from exc

        if response.status_code >= 400:
            logger.warning(
                "provider request failed",
                extra={
                    "extra_fields": safe_log_context(
                        method=method, path=path, status=response.status_code
                    )
                },
            )
            raise ProviderError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{method} {path} returned invalid JSON", status_code=response.status_code
            ) from exc

    # Reads

    def list_chats(self, instance: str, page: int = 1, page_size: int = 100) -> Any:
        """One page of chats (POST /chat/findChats/{instance})."""
        return self._request(
            "POST",
            f"/chat/findChats/{instance}",
            json={"where": {}, "limit": page_size, "page": page, "withLastMessage": True},
        )

    def list_messages(
        self,
        instance: str,
        conversation_id: str,
        page: int = 1,
        page_size: int = 100,
    ) -> Any:
        """One page of messages for a conversation (POST /chat/findMessages/{instance})."""
        return self._request(
            "POST",
            f"/chat/findMessages/{instance}",
            json={
                "where": {"key": {"remoteJid": conversation_id}},
                "page": page,
                "offset": (page - 1) * page_size,
                "limit": page_size,
            },
        )

    def get_group_info(self, instance: str, group_id: str) -> dict[str, Any] | None:
        """Group metadata (GET /group/findGroupInfos/{instance})."""
        data = self._request(
            "GET", f"/group/findGroupInfos/{instance}", params={"groupJid": group_id}
        )
        return data if isinstance(data, dict) and data else None

    # Writes

    def mark_read(
        self,
        instance: str,
        conversation_id: str,
        message_ids: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Mark messages read. message_ids items: {"id": ..., "fromMe": ...}."""
        read_messages = [
            {
                "remoteJid": conversation_id,
                "id": item["id"],
                "fromMe": bool(item.get("fromMe")),
            }
            for item in message_ids
        ]
        return self._request(
            "POST",
            f"/chat/markMessageAsRead/{instance}",
            json={"readMessages": read_messages},
        ) or {}

    def send_text(self, instance: str, number: str, text: str) -> dict[str, Any]:
        logger.info(
            "sending text",
            extra={
                "extra_fields": safe_log_context(
                    instance=instance, to=mask_jid(number), text_len=len(text)
                )
            },
        )
        return self._request(
            "POST", f"/message/sendText/{instance}", json={"number": number, "text": text}
        ) or {}

    def send_media(
        self,
        instance: str,
        number: str,
        media: str,
        mediatype: str,
        *,
        mimetype: str | None = None,
        caption: str | None = None,
        file_name: str | None = None,
    ) -> dict[str, Any]:
        """Send image/video/document. `media` is a URL or base64 string."""
        body: dict[str, Any] = {"number": number, "mediatype": mediatype, "media": media}
        if mimetype:
            body["mimetype"] = mimetype
        if caption:
            body["caption"] = caption
        if file_name:
            body["fileName"] = file_name
        return self._request("POST", f"/message/sendMedia/{instance}", json=body) or {}

    def send_audio(self, instance: str, number: str, audio: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/message/sendWhatsAppAudio/{instance}",
            json={"number": number, "audio": audio},
        ) or {}

    def send_sticker(self, instance: str, number: str, sticker: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/message/sendSticker/{instance}",
            json={"number": number, "sticker": sticker},
        ) or {}

    def set_webhook(
        self,
        instance: str,
        url: str,
        events: tuple[str, ...] = WEBHOOK_EVENTS,
    ) -> dict[str, Any]:
        """(Re)establish the live push subscription for an instance."""
        return self._request(
            "POST",
            f"/webhook/set/{instance}",
            json={
                "webhook": {
                    "enabled": True,
                    "url": url,
                    "webhookByEvents": False,
                    "webhookBase64": True,
                    "events": list(events),
                }
            },
        ) or {}

    def set_websocket(
        self, instance: str, events: tuple[str, ...] = WEBSOCKET_EVENTS
    ) -> dict[str, Any]:
        """Enable the instance's push socket (POST /websocket/set/{instance})."""
        return self._request(
            "POST",
            f"/websocket/set/{instance}",
            json={"websocket": {"enabled": True, "events": list(events)}},
        ) or {}


class RetryingProvider:
    """Wraps a Provider so reads and webhook setup go through one RetryPolicy.

    Sends and mark_read are not retried: the Provider may have applied them.
    """

    def __init__(self, client: Provider, policy: RetryPolicy | None = None) -> None:
        self.client = client
        self.policy = policy or RetryPolicy()

    def list_chats(self, instance: str, page: int = 1, page_size: int = 100) -> Any:
        return self.policy.run(
            lambda: self.client.list_chats(instance, page, page_size),
            f"list_chats page={page}",
        )

    def list_messages(
        self, instance: str, conversation_id: str, page: int = 1, page_size: int = 100
    ) -> Any:
        return self.policy.run(
            lambda: self.client.list_messages(instance, conversation_id, page, page_size),
            f"list_messages page={page}",
        )

    def get_group_info(self, instance: str, group_id: str) -> dict[str, Any] | None:
        return self.policy.run(
            lambda: self.client.get_group_info(instance, group_id),
            "get_group_info",
        )

    def set_webhook(self, instance: str, url: str) -> dict[str, Any]:
        return self.policy.run(lambda: self.client.set_webhook(instance, url), "set_webhook")

    def set_websocket(self, instance: str) -> dict[str, Any]:
        return self.policy.run(lambda: self.client.set_websocket(instance), "set_websocket")

    def mark_read(
        self, instance: str, conversation_id: str, message_ids: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return self.client.mark_read(instance, conversation_id, message_ids)

    def __getattr__(self, name: str) -> Any:
        # send_* pass straight through
        return getattr(self.client, name)
