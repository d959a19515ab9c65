"""Chats repository - one row per (instance, conversation id).

Uses raw SQL with psycopg2 (no ORM).

Concurrency notes:
- unread_count is only changed with single-statement arithmetic
  (increment_unread / reset_unread), never read-modify-write.
- apply_last_message only overwrites an older (or missing) summary, so
  concurrent writers converge on the newest message.
"""

import json
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from wppgateway.infra.db import build_set_clause, row_to_dict

_COLUMNS = """
    id::text AS id, instance_id::text AS instance_id, chat_id,
    contact_id::text AS contact_id, last_message, last_message_time,
    unread_count, pinned, archived, muted, created_at, updated_at
"""

UPDATABLE_COLUMNS = frozenset(
    {"contact_id", "unread_count", "pinned", "archived", "muted", "last_message", "last_message_time"}
)
JSON_COLUMNS = frozenset({"last_message"})


def find_chat(cur: PgCursor, *, instance_id: str, chat_id: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM chats WHERE instance_id = %s AND chat_id = %s",
        (instance_id, chat_id),
    )
    return row_to_dict(cur, cur.fetchone())


def insert_chat_if_absent(
    cur: PgCursor,
    *,
    instance_id: str,
    chat_id: str,
    fields: dict[str, Any],
) -> bool:
    """Insert a chat unless (instance_id, chat_id) exists. True if inserted."""
    last_message = fields.get("last_message")
    cur.execute(
        """
        INSERT INTO chats (
            instance_id, chat_id, contact_id, last_message, last_message_time,
            unread_count, pinned, archived, muted
        )
        VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s)
        ON CONFLICT (instance_id, chat_id) DO NOTHING
        """,
        (
            instance_id,
            chat_id,
            fields.get("contact_id"),
            json.dumps(last_message, default=str) if last_message is not None else None,
            fields.get("last_message_time"),
            max(0, int(fields.get("unread_count") or 0)),
            bool(fields.get("pinned", False)),
            bool(fields.get("archived", False)),
            bool(fields.get("muted", False)),
        ),
    )
    return cur.rowcount > 0


def update_chat(
    cur: PgCursor,
    *,
    instance_id: str,
    chat_id: str,
    fields: dict[str, Any],
) -> int:
    if "unread_count" in fields:
        fields = {**fields, "unread_count": max(0, int(fields["unread_count"] or 0))}
    set_clause, params = build_set_clause(fields, UPDATABLE_COLUMNS, JSON_COLUMNS)
    if not set_clause:
        return 0
    cur.execute(
        f"""
        UPDATE chats SET {set_clause}, updated_at = now()
        WHERE instance_id = %s AND chat_id = %s
        """,
        (*params, instance_id, chat_id),
    )
    return cur.rowcount


def apply_last_message(
    cur: PgCursor,
    *,
    instance_id: str,
    chat_id: str,
    summary: dict[str, Any],
    message_time: datetime,
) -> bool:
    """Write the summary if the stored one is missing or not newer."""
    cur.execute(
        """
        UPDATE chats
        SET last_message = %s::jsonb, last_message_time = %s, updated_at = now()
        WHERE instance_id = %s AND chat_id = %s
          AND (last_message_time IS NULL OR last_message_time <= %s)
        """,
        (json.dumps(summary, default=str), message_time, instance_id, chat_id, message_time),
    )
    return cur.rowcount > 0


def increment_unread(cur: PgCursor, *, instance_id: str, chat_id: str) -> int:
    cur.execute(
        """
        UPDATE chats
        SET unread_count = unread_count + 1, updated_at = now()
        WHERE instance_id = %s AND chat_id = %s
        RETURNING unread_count
        """,
        (instance_id, chat_id),
    )
    row = cur.fetchone()
    return row[0] if row else 0


def reset_unread(cur: PgCursor, *, instance_id: str, chat_id: str) -> int:
    cur.execute(
        """
        UPDATE chats SET unread_count = 0, updated_at = now()
        WHERE instance_id = %s AND chat_id = %s
        """,
        (instance_id, chat_id),
    )
    return cur.rowcount


def count_chats(cur: PgCursor, *, instance_id: str) -> int:
    cur.execute("SELECT count(*) FROM chats WHERE instance_id = %s", (instance_id,))
    return cur.fetchone()[0]
