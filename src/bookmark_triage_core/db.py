from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import psycopg


@contextmanager
def connect(dsn: str, *, schema: str = "public") -> Iterator[psycopg.Connection]:
    """
    Opens a connection pinned to `schema` and UTC. Connections are shared with worker threads
    via `asyncio.to_thread`; psycopg serializes access to a single connection.
    """
    if not dsn:
        raise ValueError("Missing Postgres DSN (set PG_DSN)")
    options = f"-c search_path={schema} -c timezone=UTC"
    with psycopg.connect(dsn, options=options) as conn:
        yield conn
