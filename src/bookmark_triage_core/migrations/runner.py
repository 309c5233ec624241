from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import psycopg

from bookmark_triage_core.util import sha256_text


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path

    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def checksum(self) -> str:
        return sha256_text(self.sql())


class MigrationError(RuntimeError):
    pass


def discover_migrations(directory: Path | None = None) -> list[Migration]:
    directory = directory or Path(__file__).resolve().parent / "sql"
    return [Migration(version=p.stem, path=p) for p in sorted(directory.glob("*.sql"))]


def _prepare(conn: psycopg.Connection, schema: str) -> dict[str, str]:
    conn.execute(f'create schema if not exists "{schema}"')
    conn.execute(f'set search_path to "{schema}"')
    conn.execute(
        """
        create table if not exists triage_schema_migrations (
          version text primary key,
          checksum text not null,
          applied_at timestamptz not null default now()
        )
        """
    )
    rows = conn.execute("select version, checksum from triage_schema_migrations").fetchall()
    return {r[0]: r[1] for r in rows}


def apply_migrations(
    dsn: str,
    *,
    schema: str = "public",
    migrations: Iterable[Migration] | None = None,
) -> list[str]:
    """
    Applies pending migrations into `schema` and returns the versions applied.

    Already-recorded versions are skipped; a recorded version whose file changed since it was
    applied raises MigrationError rather than silently diverging.
    """
    if migrations is None:
        migrations = discover_migrations()

    applied: list[str] = []
    with psycopg.connect(dsn) as conn:
        conn.execute("set timezone to 'UTC'")
        done = _prepare(conn, schema)
        conn.commit()

        for mig in migrations:
            checksum = mig.checksum()
            if mig.version in done:
                if done[mig.version] != checksum:
                    raise MigrationError(f"Migration {mig.version} changed after it was applied")
                continue
            conn.execute(mig.sql())
            conn.execute(
                "insert into triage_schema_migrations(version, checksum) values (%s, %s)",
                (mig.version, checksum),
            )
            conn.commit()
            applied.append(mig.version)

    return applied
