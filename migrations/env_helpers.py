"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without alembic.context.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL


def dsn_to_url(dsn: str) -> URL:
    """Convert a libpq DSN (key=value or postgres:// URI) to a SQLAlchemy URL.

    A Unix socket host (e.g. /var/run/postgresql) is passed as the `host`
    query argument. DB_PASSWORD fills in a missing password.
    """
    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD") or None
    host = params.get("host")
    port = params.get("port")
    socket_host = bool(host and host.startswith("/"))

    return URL.create(
        drivername="postgresql+psycopg2",
        username=params.get("user") or None,
        password=password,
        host=None if socket_host else (host or "localhost"),
        port=None if socket_host else int(port or 5432),
        database=params.get("dbname") or None,
        query={"host": host} if socket_host else {},
    )


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    return dsn_to_url(url).render_as_string(hide_password=False)
