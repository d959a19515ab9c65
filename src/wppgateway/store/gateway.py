"""Persistence gateway used by bulk sync, live ingestion and the HTTP routes.

Records are plain dicts keyed by column name. Natural keys:
- contact: (instance_id, phone)
- chat: (instance_id, chat_id)  chat_id is the normalized conversation id
- message: (instance_id, message_id)

Implementations must make insert_message_if_absent, the find_or_create_*
methods, increment_unread and apply_last_message atomic with respect to
concurrent callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol


class InstanceNotFoundError(LookupError):
    """No tenant instance with the given id or provider name."""

    def __init__(self, instance_ref: str) -> None:
        super().__init__(f"Instance not found: {instance_ref}")
        self.instance_ref = instance_ref


class ChatStore(Protocol):
    # Instances

    def get_instance(self, instance_id: str) -> dict[str, Any] | None: ...

    def find_instance_by_provider_name(self, provider_name: str) -> dict[str, Any] | None: ...

    def update_instance(self, instance_id: str, fields: dict[str, Any]) -> None: ...

    def list_instances_by_status(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]: ...

    # Contacts

    def find_contact(self, instance_id: str, phone: str) -> dict[str, Any] | None: ...

    def find_or_create_contact(
        self, instance_id: str, phone: str, defaults: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        """Return (contact, created). `defaults` only apply on creation."""
        ...

    def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None: ...

    # Chats

    def find_chat(self, instance_id: str, chat_id: str) -> dict[str, Any] | None: ...

    def find_or_create_chat(
        self, instance_id: str, chat_id: str, defaults: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]: ...

    def update_chat(self, instance_id: str, chat_id: str, fields: dict[str, Any]) -> None: ...

    def apply_last_message(
        self,
        instance_id: str,
        chat_id: str,
        summary: dict[str, Any],
        message_time: datetime,
    ) -> bool:
        """Set the chat summary unless the stored one is newer.

        Returns True when the summary was written.
        """
        ...

    def increment_unread(self, instance_id: str, chat_id: str) -> int:
        """Atomically add 1 to unread_count; returns the new value."""
        ...

    def reset_unread(self, instance_id: str, chat_id: str) -> None: ...

    # Messages

    def insert_message_if_absent(self, instance_id: str, row: dict[str, Any]) -> bool:
        """Insert unless (instance_id, row["message_id"]) exists. True if inserted."""
        ...

    def find_message(self, instance_id: str, message_id: str) -> dict[str, Any] | None: ...

    def update_message_status(self, instance_id: str, message_id: str, status: str) -> bool: ...

    def existing_message_ids_for_chat(self, instance_id: str, chat_id: str) -> set[str]: ...

    def latest_message_for_chat(self, instance_id: str, chat_id: str) -> dict[str, Any] | None: ...

    # Totals

    def count_chats(self, instance_id: str) -> int: ...

    def count_messages(self, instance_id: str) -> int: ...
