"""Contacts repository - one row per (instance, phone).

Uses raw SQL with psycopg2 (no ORM).

`phone` holds the local part of the conversation id, so groups are stored
here too (is_group = true, group_metadata populated).
"""

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from wppgateway.infra.db import build_set_clause, row_to_dict

_COLUMNS = """
    id::text AS id, instance_id::text AS instance_id, phone, name, push_name,
    profile_pic_url, is_group, group_metadata, last_seen, created_at, updated_at
"""

UPDATABLE_COLUMNS = frozenset(
    {"name", "push_name", "profile_pic_url", "is_group", "group_metadata", "last_seen"}
)
JSON_COLUMNS = frozenset({"group_metadata"})


def find_contact(cur: PgCursor, *, instance_id: str, phone: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM contacts WHERE instance_id = %s AND phone = %s",
        (instance_id, phone),
    )
    return row_to_dict(cur, cur.fetchone())


def insert_contact_if_absent(
    cur: PgCursor,
    *,
    instance_id: str,
    phone: str,
    fields: dict[str, Any],
) -> bool:
    """Insert a contact unless (instance_id, phone) exists.

    Returns:
        True if a row was inserted, False if it already existed.
    """
    group_metadata = fields.get("group_metadata")
    cur.execute(
        """
        INSERT INTO contacts (
            instance_id, phone, name, push_name, profile_pic_url,
            is_group, group_metadata, last_seen
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
        ON CONFLICT (instance_id, phone) DO NOTHING
        """,
        (
            instance_id,
            phone,
            fields.get("name"),
            fields.get("push_name"),
            fields.get("profile_pic_url"),
            bool(fields.get("is_group", False)),
            json.dumps(group_metadata, default=str) if group_metadata is not None else None,
            fields.get("last_seen"),
        ),
    )
    return cur.rowcount > 0


def update_contact(cur: PgCursor, *, contact_id: str, fields: dict[str, Any]) -> int:
    set_clause, params = build_set_clause(fields, UPDATABLE_COLUMNS, JSON_COLUMNS)
    if not set_clause:
        return 0
    cur.execute(
        f"UPDATE contacts SET {set_clause}, updated_at = now() WHERE id = %s",
        (*params, contact_id),
    )
    return cur.rowcount
