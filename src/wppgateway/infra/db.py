"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- row_to_dict(): Map a row onto column names
- build_set_clause(): Whitelisted UPDATE SET fragments
"""

import json
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from wppgateway.settings import get_settings


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Returns:
        psycopg2 connection object.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = get_settings().database_url
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Args:
        conn: Optional existing connection. If None, creates new one.

    Yields:
        Cursor for executing queries within the transaction.

    Example:
        with txn() as cur:
            cur.execute("INSERT INTO t (x) VALUES (%s)", (1,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def row_to_dict(cur: PgCursor, row: tuple[Any, ...] | None) -> dict[str, Any] | None:
    """Map a fetched row onto the cursor's column names."""
    if row is None:
        return None
    columns = [desc[0] for desc in cur.description]
    return dict(zip(columns, row))


def build_set_clause(
    fields: dict[str, Any],
    allowed: frozenset[str],
    json_columns: frozenset[str] = frozenset(),
) -> tuple[str, list[Any]]:
    """Build "col = %s, ..." for an UPDATE from a whitelisted field dict.

    Args:
        fields: Column -> new value.
        allowed: Columns callers may update.
        json_columns: Columns stored as jsonb (values are JSON-encoded).

    Returns:
        Tuple of (SQL fragment, params). Fragment is empty if nothing to set.

    Raises:
        ValueError: If a field is not in `allowed`.
    """
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Columns not updatable: {sorted(unknown)}")

    parts: list[str] = []
    params: list[Any] = []
    for column in sorted(fields):
        value = fields[column]
        if column in json_columns:
            parts.append(f"{column} = %s::jsonb")
            params.append(json.dumps(value, default=str) if value is not None else None)
        else:
            parts.append(f"{column} = %s")
            params.append(value)
    return ", ".join(parts), params
