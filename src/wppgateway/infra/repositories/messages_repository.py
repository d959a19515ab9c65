"""Messages repository - one row per (instance, provider message id).

Uses raw SQL with psycopg2 (no ORM).

Dedupe relies on the unique index (instance_id, message_id): the insert is
`ON CONFLICT DO NOTHING` and `cur.rowcount` tells whether this call won.
"""

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from wppgateway.infra.db import row_to_dict

_COLUMNS = """
    id::text AS id, instance_id::text AS instance_id, message_id, chat_id,
    contact_id::text AS contact_id, from_me, participant, message_type, content,
    media_url, media_path, media_size, media_mime_type, timestamp_msg, status,
    quoted_message_id, metadata, created_at
"""


def insert_message_if_absent(cur: PgCursor, *, instance_id: str, row: dict[str, Any]) -> bool:
    """Insert a message unless it already exists.

    Args:
        cur: Database cursor (within transaction).
        instance_id: Tenant instance.
        row: Column values (see NormalizedMessage.to_row) plus optional contact_id.

    Returns:
        True if inserted, False if (instance_id, message_id) already existed.
    """
    cur.execute(
        """
        INSERT INTO messages (
            instance_id, message_id, chat_id, contact_id, from_me, participant,
            message_type, content, media_url, media_path, media_size,
            media_mime_type, timestamp_msg, status, quoted_message_id, metadata
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        ON CONFLICT (instance_id, message_id) DO NOTHING
        """,
        (
            instance_id,
            row["message_id"],
            row["chat_id"],
            row.get("contact_id"),
            bool(row.get("from_me")),
            row.get("participant"),
            row.get("message_type") or "unknown",
            row.get("content") or "",
            row.get("media_url"),
            row.get("media_path"),
            row.get("media_size"),
            row.get("media_mime_type"),
            row["timestamp_msg"],
            row.get("status") or "delivered",
            row.get("quoted_message_id"),
            json.dumps(row.get("metadata") or {}, default=str),
        ),
    )
    return cur.rowcount > 0


def find_message(cur: PgCursor, *, instance_id: str, message_id: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM messages WHERE instance_id = %s AND message_id = %s",
        (instance_id, message_id),
    )
    return row_to_dict(cur, cur.fetchone())


def update_message_status(
    cur: PgCursor, *, instance_id: str, message_id: str, status: str
) -> bool:
    cur.execute(
        """
        UPDATE messages SET status = %s
        WHERE instance_id = %s AND message_id = %s AND status IS DISTINCT FROM %s
        """,
        (status, instance_id, message_id, status),
    )
    return cur.rowcount > 0


def existing_message_ids_for_chat(cur: PgCursor, *, instance_id: str, chat_id: str) -> set[str]:
    cur.execute(
        "SELECT message_id FROM messages WHERE instance_id = %s AND chat_id = %s",
        (instance_id, chat_id),
    )
    return {row[0] for row in cur.fetchall()}


def latest_message_for_chat(
    cur: PgCursor, *, instance_id: str, chat_id: str
) -> dict[str, Any] | None:
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM messages
        WHERE instance_id = %s AND chat_id = %s
        ORDER BY timestamp_msg DESC, created_at DESC
        LIMIT 1
        """,
        (instance_id, chat_id),
    )
    return row_to_dict(cur, cur.fetchone())


def count_messages(cur: PgCursor, *, instance_id: str) -> int:
    cur.execute("SELECT count(*) FROM messages WHERE instance_id = %s", (instance_id,))
    return cur.fetchone()[0]
