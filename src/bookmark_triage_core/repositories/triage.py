from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

import psycopg

from bookmark_triage_core.models import (
    Bookmark,
    CachedTriageRecord,
    CategoryCount,
    RunProgress,
    TriageRow,
    TriageRun,
    UncategorizedBookmark,
)


class TriageStore(Protocol):
    """Persistence consumed by the orchestrator. All writes are keyed upserts/updates."""

    def list_bookmarks_for_triage(self) -> list[Bookmark]: ...

    def get_cached_triages(self) -> dict[str, CachedTriageRecord]: ...

    def upsert_bookmark_triages(self, rows: Sequence[TriageRow]) -> None: ...

    def create_run(
        self,
        *,
        run_id: str,
        started_at: datetime,
        total_bookmarks: int,
        category_model: str,
        summary_model: str,
        prompt_version: str,
    ) -> None: ...

    def update_run_progress(self, run_id: str, progress: RunProgress) -> None: ...

    def complete_run(
        self, run_id: str, *, finished_at: datetime, duration_ms: int, progress: RunProgress
    ) -> None: ...

    def fail_run(
        self,
        run_id: str,
        *,
        finished_at: datetime,
        duration_ms: int,
        progress: RunProgress,
        error_message: str,
    ) -> None: ...

    def fail_abandoned_runs(
        self, *, finished_at: datetime, started_before: datetime, error_message: str
    ) -> int: ...

    def get_latest_run(self) -> TriageRun | None: ...

    def list_category_counts(self, run_id: str) -> list[CategoryCount]: ...

    def list_uncategorized(self, run_id: str, limit: int = 100) -> list[UncategorizedBookmark]: ...


_RUN_COLUMNS = """
  id, status, started_at, finished_at, duration_ms, total_bookmarks,
  processed_count, cached_count, categorized_count, uncategorized_count, failed_count,
  category_model, summary_model, prompt_version,
  api_calls, prompt_tokens, completion_tokens, estimated_cost_usd, error_message
"""


def _progress_params(progress: RunProgress) -> tuple[Any, ...]:
    return (
        progress.processed_count,
        progress.cached_count,
        progress.categorized_count,
        progress.uncategorized_count,
        progress.failed_count,
        progress.api_calls,
        progress.prompt_tokens,
        progress.completion_tokens,
        progress.estimated_cost_usd,
    )


def _tags_from_json(value: Any) -> list[str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    return [t for t in value if isinstance(t, str)]


def _run_from_row(row: tuple[Any, ...]) -> TriageRun:
    return TriageRun(
        id=row[0],
        status=row[1],
        started_at=row[2],
        finished_at=row[3],
        duration_ms=row[4],
        total_bookmarks=row[5],
        progress=RunProgress(
            processed_count=row[6],
            cached_count=row[7],
            categorized_count=row[8],
            uncategorized_count=row[9],
            failed_count=row[10],
            api_calls=row[14],
            prompt_tokens=row[15],
            completion_tokens=row[16],
            estimated_cost_usd=row[17],
        ),
        category_model=row[11],
        summary_model=row[12],
        prompt_version=row[13],
        error_message=row[18],
    )


class TriageRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def upsert_bookmark(self, bookmark: Bookmark) -> None:
        """Import-side helper; the triage pipeline itself only reads bookmarks."""
        self._conn.execute(
            """
            insert into bookmarks(
              id, url, title, folder_path, url_status, final_url, http_status_code, updated_at
            ) values (%s, %s, %s, %s, %s, %s, %s, now())
            on conflict (id) do update set
              url = excluded.url,
              title = excluded.title,
              folder_path = excluded.folder_path,
              url_status = excluded.url_status,
              final_url = excluded.final_url,
              http_status_code = excluded.http_status_code,
              updated_at = now()
            """,
            (
                bookmark.id,
                bookmark.url,
                bookmark.title,
                bookmark.folder_path,
                bookmark.link_status,
                bookmark.final_url,
                bookmark.http_status_code,
            ),
        )
        self._conn.commit()

    def list_bookmarks_for_triage(self) -> list[Bookmark]:
        rows = self._conn.execute(
            """
            select id, url, title, folder_path, url_status, final_url, http_status_code
            from bookmarks
            order by created_at asc, id asc
            """
        ).fetchall()
        return [
            Bookmark(
                id=r[0],
                url=r[1],
                title=r[2],
                folder_path=r[3],
                link_status=r[4],
                final_url=r[5],
                http_status_code=r[6],
            )
            for r in rows
        ]

    def get_cached_triages(self) -> dict[str, CachedTriageRecord]:
        rows = self._conn.execute(
            """
            select
              bookmark_id, source_hash, source_type, category, tags_json,
              summary, reason_code, confidence,
              category_model, summary_model, prompt_version
            from bookmark_triage
            """
        ).fetchall()
        return {
            r[0]: CachedTriageRecord(
                bookmark_id=r[0],
                source_hash=r[1],
                source_type=r[2],
                category=r[3],
                tags=_tags_from_json(r[4]),
                summary=r[5],
                reason_code=r[6],
                confidence=r[7],
                category_model=r[8],
                summary_model=r[9],
                prompt_version=r[10],
            )
            for r in rows
        }

    def upsert_bookmark_triages(self, rows: Sequence[TriageRow]) -> None:
        if not rows:
            return
        with self._conn.cursor() as cur:
            cur.executemany(
                """
                insert into bookmark_triage (
                  bookmark_id, triage_run_id, source_hash, source_type, category,
                  tags_json, summary, reason_code, confidence, categorized_at,
                  category_model, summary_model, prompt_version
                ) values (
                  %s, %s, %s, %s, %s,
                  %s::jsonb, %s, %s, %s, %s,
                  %s, %s, %s
                )
                on conflict (bookmark_id) do update set
                  triage_run_id = excluded.triage_run_id,
                  source_hash = excluded.source_hash,
                  source_type = excluded.source_type,
                  category = excluded.category,
                  tags_json = excluded.tags_json,
                  summary = excluded.summary,
                  reason_code = excluded.reason_code,
                  confidence = excluded.confidence,
                  categorized_at = excluded.categorized_at,
                  category_model = excluded.category_model,
                  summary_model = excluded.summary_model,
                  prompt_version = excluded.prompt_version
                """,
                [
                    (
                        row.bookmark_id,
                        row.triage_run_id,
                        row.source_hash,
                        row.source_type,
                        row.category,
                        json.dumps(row.tags, ensure_ascii=False),
                        row.summary,
                        row.reason_code,
                        row.confidence,
                        row.categorized_at,
                        row.category_model,
                        row.summary_model,
                        row.prompt_version,
                    )
                    for row in rows
                ],
            )
        self._conn.commit()

    def create_run(
        self,
        *,
        run_id: str,
        started_at: datetime,
        total_bookmarks: int,
        category_model: str,
        summary_model: str,
        prompt_version: str,
    ) -> None:
        self._conn.execute(
            """
            insert into triage_runs(
              id, status, started_at, total_bookmarks,
              category_model, summary_model, prompt_version
            ) values (%s, 'running', %s, %s, %s, %s, %s)
            """,
            (run_id, started_at, total_bookmarks, category_model, summary_model, prompt_version),
        )
        self._conn.commit()

    def update_run_progress(self, run_id: str, progress: RunProgress) -> None:
        self._conn.execute(
            """
            update triage_runs set
              processed_count = %s, cached_count = %s, categorized_count = %s,
              uncategorized_count = %s, failed_count = %s,
              api_calls = %s, prompt_tokens = %s, completion_tokens = %s,
              estimated_cost_usd = %s
            where id = %s
            """,
            (*_progress_params(progress), run_id),
        )
        self._conn.commit()

    def complete_run(
        self, run_id: str, *, finished_at: datetime, duration_ms: int, progress: RunProgress
    ) -> None:
        self._finish_run(
            run_id,
            status="completed",
            finished_at=finished_at,
            duration_ms=duration_ms,
            progress=progress,
            error_message=None,
        )

    def fail_run(
        self,
        run_id: str,
        *,
        finished_at: datetime,
        duration_ms: int,
        progress: RunProgress,
        error_message: str,
    ) -> None:
        self._finish_run(
            run_id,
            status="failed",
            finished_at=finished_at,
            duration_ms=duration_ms,
            progress=progress,
            error_message=error_message,
        )

    def _finish_run(
        self,
        run_id: str,
        *,
        status: str,
        finished_at: datetime,
        duration_ms: int,
        progress: RunProgress,
        error_message: str | None,
    ) -> None:
        self._conn.execute(
            """
            update triage_runs set
              status = %s, finished_at = %s, duration_ms = %s,
              processed_count = %s, cached_count = %s, categorized_count = %s,
              uncategorized_count = %s, failed_count = %s,
              api_calls = %s, prompt_tokens = %s, completion_tokens = %s,
              estimated_cost_usd = %s, error_message = %s
            where id = %s
            """,
            (status, finished_at, duration_ms, *_progress_params(progress), error_message, run_id),
        )
        self._conn.commit()

    def fail_abandoned_runs(
        self, *, finished_at: datetime, started_before: datetime, error_message: str
    ) -> int:
        """
        Fails `running` rows started before `started_before`. Newer rows may belong to a live run
        of another process sharing the database and are left alone.
        """
        cur = self._conn.execute(
            """
            update triage_runs set
              status = 'failed',
              finished_at = %s,
              failed_count = failed_count + 1,
              error_message = %s
            where status = 'running'
              and started_at < %s
            """,
            (finished_at, error_message, started_before),
        )
        self._conn.commit()
        return cur.rowcount

    def get_latest_run(self) -> TriageRun | None:
        row = self._conn.execute(
            f"select {_RUN_COLUMNS} from triage_runs order by started_at desc limit 1"
        ).fetchone()
        return _run_from_row(row) if row else None

    def list_category_counts(self, run_id: str) -> list[CategoryCount]:
        rows = self._conn.execute(
            """
            select category, count(*) as n
            from bookmark_triage
            where triage_run_id = %s
              and category is not null
              and category <> ''
            group by category
            order by n desc, category asc
            """,
            (run_id,),
        ).fetchall()
        return [CategoryCount(category=r[0], count=r[1]) for r in rows]

    def list_uncategorized(self, run_id: str, limit: int = 100) -> list[UncategorizedBookmark]:
        rows = self._conn.execute(
            """
            select b.id, b.title, b.url, bt.reason_code
            from bookmark_triage bt
            join bookmarks b on b.id = bt.bookmark_id
            where bt.triage_run_id = %s
              and (bt.category is null or bt.category = '')
            order by b.updated_at desc, b.id asc
            limit %s
            """,
            (run_id, limit),
        ).fetchall()
        return [
            UncategorizedBookmark(
                bookmark_id=r[0],
                title=r[1],
                url=r[2],
                reason_code=r[3] or "unknown",
            )
            for r in rows
        ]
