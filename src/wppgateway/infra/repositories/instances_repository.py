"""Instances repository - tenant instances and their connection state.

Uses raw SQL with psycopg2 (no ORM).
"""

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from wppgateway.infra.db import build_set_clause, row_to_dict

_COLUMNS = """
    id::text AS id, instance_name, evolution_instance_name, status,
    qr_code, profile_name, phone, last_seen, created_at, updated_at
"""

UPDATABLE_COLUMNS = frozenset(
    {"status", "qr_code", "profile_name", "phone", "last_seen"}
)


def get_instance(cur: PgCursor, instance_id: str) -> dict[str, Any] | None:
    cur.execute(f"SELECT {_COLUMNS} FROM instances WHERE id = %s", (instance_id,))
    return row_to_dict(cur, cur.fetchone())


def find_by_provider_name(cur: PgCursor, provider_name: str) -> dict[str, Any] | None:
    """Look up an instance by its Evolution instance name (webhook path)."""
    cur.execute(
        f"SELECT {_COLUMNS} FROM instances WHERE evolution_instance_name = %s",
        (provider_name,),
    )
    return row_to_dict(cur, cur.fetchone())


def list_by_status(cur: PgCursor, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
    if not statuses:
        return []
    cur.execute(
        f"SELECT {_COLUMNS} FROM instances WHERE status = ANY(%s) ORDER BY created_at",
        (list(statuses),),
    )
    return [row_to_dict(cur, row) for row in cur.fetchall()]


def update_instance(cur: PgCursor, instance_id: str, fields: dict[str, Any]) -> int:
    """Update connection fields. Returns affected row count."""
    set_clause, params = build_set_clause(fields, UPDATABLE_COLUMNS)
    if not set_clause:
        return 0
    cur.execute(
        f"UPDATE instances SET {set_clause}, updated_at = now() WHERE id = %s",
        (*params, instance_id),
    )
    return cur.rowcount


def insert_instance(
    cur: PgCursor,
    *,
    instance_name: str,
    evolution_instance_name: str,
    status: str = "disconnected",
) -> str:
    """Register an instance. Returns its id."""
    cur.execute(
        """
        INSERT INTO instances (instance_name, evolution_instance_name, status)
        VALUES (%s, %s, %s)
        RETURNING id::text
        """,
        (instance_name, evolution_instance_name, status),
    )
    return cur.fetchone()[0]
