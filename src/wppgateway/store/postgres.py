"""Postgres implementation of ChatStore.

Each call runs in its own short transaction (txn()). The atomic operations
rely on single statements: ON CONFLICT DO NOTHING inserts, conditional
UPDATEs and `unread_count = unread_count + 1`.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator

from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from wppgateway.infra.db import get_conn, txn
from wppgateway.infra.repositories import (
    chats_repository,
    contacts_repository,
    instances_repository,
    messages_repository,
)


class PostgresChatStore:
    def __init__(self, connect: Callable[[], PgConnection] = get_conn) -> None:
        self._connect = connect

    @contextmanager
    def _txn(self) -> Iterator[PgCursor]:
        conn = self._connect()
        try:
            with txn(conn) as cur:
                yield cur
        finally:
            conn.close()

    # Instances

    def get_instance(self, instance_id: str) -> dict[str, Any] | None:
        with self._txn() as cur:
            return instances_repository.get_instance(cur, instance_id)

    def find_instance_by_provider_name(self, provider_name: str) -> dict[str, Any] | None:
        with self._txn() as cur:
            return instances_repository.find_by_provider_name(cur, provider_name)

    def update_instance(self, instance_id: str, fields: dict[str, Any]) -> None:
        with self._txn() as cur:
            instances_repository.update_instance(cur, instance_id, fields)

    def list_instances_by_status(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        with self._txn() as cur:
            return instances_repository.list_by_status(cur, statuses)

    # Contacts

    def find_contact(self, instance_id: str, phone: str) -> dict[str, Any] | None:
        with self._txn() as cur:
            return contacts_repository.find_contact(cur, instance_id=instance_id, phone=phone)

    def find_or_create_contact(
        self, instance_id: str, phone: str, defaults: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        with self._txn() as cur:
            created = contacts_repository.insert_contact_if_absent(
                cur, instance_id=instance_id, phone=phone, fields=defaults
            )
            contact = contacts_repository.find_contact(cur, instance_id=instance_id, phone=phone)
        return contact, created

    def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        with self._txn() as cur:
            contacts_repository.update_contact(cur, contact_id=contact_id, fields=fields)

    # Chats

    def find_chat(self, instance_id: str, chat_id: str) -> dict[str, Any] | None:
        with self._txn() as cur:
            return chats_repository.find_chat(cur, instance_id=instance_id, chat_id=chat_id)

    def find_or_create_chat(
        self, instance_id: str, chat_id: str, defaults: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        with self._txn() as cur:
            created = chats_repository.insert_chat_if_absent(
                cur, instance_id=instance_id, chat_id=chat_id, fields=defaults
            )
            chat = chats_repository.find_chat(cur, instance_id=instance_id, chat_id=chat_id)
        return chat, created

    def update_chat(self, instance_id: str, chat_id: str, fields: dict[str, Any]) -> None:
        with self._txn() as cur:
            chats_repository.update_chat(
                cur, instance_id=instance_id, chat_id=chat_id, fields=fields
            )

    def apply_last_message(
        self,
        instance_id: str,
        chat_id: str,
        summary: dict[str, Any],
        message_time: datetime,
    ) -> bool:
        with self._txn() as cur:
            return chats_repository.apply_last_message(
                cur,
                instance_id=instance_id,
                chat_id=chat_id,
                summary=summary,
                message_time=message_time,
            )

    def increment_unread(self, instance_id: str, chat_id: str) -> int:
        with self._txn() as cur:
            return chats_repository.increment_unread(cur, instance_id=instance_id, chat_id=chat_id)

    def reset_unread(self, instance_id: str, chat_id: str) -> None:
        with self._txn() as cur:
            chats_repository.reset_unread(cur, instance_id=instance_id, chat_id=chat_id)

    # Messages

    def insert_message_if_absent(self, instance_id: str, row: dict[str, Any]) -> bool:
        with self._txn() as cur:
            return messages_repository.insert_message_if_absent(
                cur, instance_id=instance_id, row=row
            )

    def find_message(self, instance_id: str, message_id: str) -> dict[str, Any] | None:
        with self._txn() as cur:
            return messages_repository.find_message(
                cur, instance_id=instance_id, message_id=message_id
            )

    def update_message_status(self, instance_id: str, message_id: str, status: str) -> bool:
        with self._txn() as cur:
            return messages_repository.update_message_status(
                cur, instance_id=instance_id, message_id=message_id, status=status
            )

    def existing_message_ids_for_chat(self, instance_id: str, chat_id: str) -> set[str]:
        with self._txn() as cur:
            return messages_repository.existing_message_ids_for_chat(
                cur, instance_id=instance_id, chat_id=chat_id
            )

    def latest_message_for_chat(self, instance_id: str, chat_id: str) -> dict[str, Any] | None:
        with self._txn() as cur:
            return messages_repository.latest_message_for_chat(
                cur, instance_id=instance_id, chat_id=chat_id
            )

    # Totals

    def count_chats(self, instance_id: str) -> int:
        with self._txn() as cur:
            return chats_repository.count_chats(cur, instance_id=instance_id)

    def count_messages(self, instance_id: str) -> int:
        with self._txn() as cur:
            return messages_repository.count_messages(cur, instance_id=instance_id)
