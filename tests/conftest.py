from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

import psycopg
import pytest

from bookmark_triage_core.categorize import CATEGORIZE_SYSTEM_PROMPT, DISCOVERY_SYSTEM_PROMPT
from bookmark_triage_core.config import Settings
from bookmark_triage_core.db import connect
from bookmark_triage_core.llm import JsonCompletion, LlmCallError
from bookmark_triage_core.migrations.runner import apply_migrations
from bookmark_triage_core.models import (
    Bookmark,
    CachedTriageRecord,
    CategoryCount,
    RunProgress,
    TriageRow,
    TriageRun,
    UncategorizedBookmark,
)
from bookmark_triage_core.summarize import SUMMARY_SYSTEM_PROMPT


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN not set; skipping DB integration tests")
    return dsn


@pytest.fixture(scope="session")
def pg_schema(pg_dsn: str) -> Generator[str, None, None]:
    schema = f"test_{uuid.uuid4().hex[:10]}"
    apply_migrations(pg_dsn, schema=schema)
    yield schema
    with psycopg.connect(pg_dsn) as conn:
        conn.execute(f'drop schema if exists "{schema}" cascade')
        conn.commit()


@pytest.fixture()
def conn(pg_dsn: str, pg_schema: str) -> Generator[psycopg.Connection, None, None]:
    with connect(pg_dsn, schema=pg_schema) as c:
        c.execute("truncate bookmark_triage, triage_runs, bookmarks cascade")
        c.commit()
        yield c


class InMemoryTriageStore:
    def __init__(self, bookmarks: Sequence[Bookmark] = ()):
        self.bookmarks: list[Bookmark] = list(bookmarks)
        self.triage: dict[str, TriageRow] = {}
        self.runs: dict[str, TriageRun] = {}
        self.progress_updates: list[tuple[str, RunProgress]] = []
        self.upsert_calls = 0
        self.fail_complete = False
        self.fail_fail_run = False

    def list_bookmarks_for_triage(self) -> list[Bookmark]:
        return list(self.bookmarks)

    def get_cached_triages(self) -> dict[str, CachedTriageRecord]:
        return {
            bid: CachedTriageRecord(
                bookmark_id=row.bookmark_id,
                source_hash=row.source_hash,
                source_type=row.source_type,
                category=row.category,
                tags=list(row.tags),
                summary=row.summary,
                reason_code=row.reason_code,
                confidence=row.confidence,
                category_model=row.category_model,
                summary_model=row.summary_model,
                prompt_version=row.prompt_version,
            )
            for bid, row in self.triage.items()
        }

    def upsert_bookmark_triages(self, rows: Sequence[TriageRow]) -> None:
        self.upsert_calls += 1
        for row in rows:
            self.triage[row.bookmark_id] = row

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
        self.runs[run_id] = TriageRun(
            id=run_id,
            status="running",
            started_at=started_at,
            finished_at=None,
            duration_ms=0,
            total_bookmarks=total_bookmarks,
            category_model=category_model,
            summary_model=summary_model,
            prompt_version=prompt_version,
        )

    def update_run_progress(self, run_id: str, progress: RunProgress) -> None:
        self.progress_updates.append((run_id, progress))
        self.runs[run_id] = replace(self.runs[run_id], progress=progress)

    def complete_run(
        self, run_id: str, *, finished_at: datetime, duration_ms: int, progress: RunProgress
    ) -> None:
        if self.fail_complete:
            raise RuntimeError("database went away")
        self.runs[run_id] = replace(
            self.runs[run_id],
            status="completed",
            finished_at=finished_at,
            duration_ms=duration_ms,
            progress=progress,
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
        if self.fail_fail_run:
            raise RuntimeError("database still away")
        self.runs[run_id] = replace(
            self.runs[run_id],
            status="failed",
            finished_at=finished_at,
            duration_ms=duration_ms,
            progress=progress,
            error_message=error_message,
        )

    def fail_abandoned_runs(
        self, *, finished_at: datetime, started_before: datetime, error_message: str
    ) -> int:
        count = 0
        for run_id, run in list(self.runs.items()):
            if run.status == "running" and run.started_at < started_before:
                self.runs[run_id] = replace(
                    run, status="failed", finished_at=finished_at, error_message=error_message
                )
                count += 1
        return count

    def get_latest_run(self) -> TriageRun | None:
        if not self.runs:
            return None
        return max(self.runs.values(), key=lambda r: r.started_at)

    def list_category_counts(self, run_id: str) -> list[CategoryCount]:
        counts: dict[str, int] = {}
        for row in self.triage.values():
            if row.triage_run_id == run_id and row.category:
                counts[row.category] = counts.get(row.category, 0) + 1
        ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [CategoryCount(category=c, count=n) for c, n in ordered]

    def list_uncategorized(self, run_id: str, limit: int = 100) -> list[UncategorizedBookmark]:
        by_id = {b.id: b for b in self.bookmarks}
        out = [
            UncategorizedBookmark(
                bookmark_id=row.bookmark_id,
                title=by_id[row.bookmark_id].title,
                url=by_id[row.bookmark_id].url,
                reason_code=row.reason_code or "unknown",
            )
            for row in self.triage.values()
            if row.triage_run_id == run_id and not row.category
        ]
        return out[:limit]


class ScriptedLlm:
    """
    Answers discovery, categorization and summary prompts deterministically. Every bookmark is
    put into the first category unless `assign` overrides it.
    """

    def __init__(self, categories: Sequence[str] = ("Engineering", "News")):
        self.categories = list(categories)
        self.assign: dict[str, dict[str, Any]] = {}
        self.fail_categorize_batches: set[int] = set()
        self.fail_summary_batches: set[int] = set()
        self.fail_discovery = False
        self.calls: list[tuple[str, str, Any]] = []
        self._categorize_batches = 0
        self._summary_batches = 0
        self.gate: asyncio.Event | None = None

    def calls_for(self, system_prompt: str) -> list[Any]:
        return [payload for _, prompt, payload in self.calls if prompt == system_prompt]

    async def complete_json(
        self,
        *,
        model: str,
        system_prompt: str,
        user_payload: Any,
        temperature: float,
    ) -> JsonCompletion:
        self.calls.append((model, system_prompt, user_payload))
        if self.gate is not None:
            await self.gate.wait()

        if system_prompt == DISCOVERY_SYSTEM_PROMPT:
            if self.fail_discovery:
                raise LlmCallError("discovery unavailable")
            data: Any = {"categories": [{"name": c} for c in self.categories]}
        elif system_prompt == CATEGORIZE_SYSTEM_PROMPT:
            index = self._categorize_batches
            self._categorize_batches += 1
            if index in self.fail_categorize_batches:
                raise LlmCallError("Chat completion request failed (503): overloaded")
            items = []
            for b in user_payload["bookmarks"]:
                override = self.assign.get(b["id"])
                if override is None:
                    items.append(
                        {
                            "id": b["id"],
                            "category": self.categories[0],
                            "tags": ["python", "web"],
                            "confidence": 0.9,
                        }
                    )
                elif override.get("omit"):
                    continue
                else:
                    items.append({"id": b["id"], **override})
            data = {"items": items}
        elif system_prompt == SUMMARY_SYSTEM_PROMPT:
            index = self._summary_batches
            self._summary_batches += 1
            if index in self.fail_summary_batches:
                raise LlmCallError("Chat completion request failed (500): boom")
            data = {
                "items": [
                    {"id": b["id"], "summary": f"A page titled {b['title']} about {b['category']}."}
                    for b in user_payload["bookmarks"]
                ]
            }
        else:
            raise AssertionError(f"unexpected prompt: {system_prompt}")

        return JsonCompletion(data=data, prompt_tokens=1000, completion_tokens=200)


class FakeFetcher:
    def __init__(self, excerpt: str = "Some readable page text"):
        self.excerpt = excerpt
        self.excerpts: dict[str, str] = {}
        self.urls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def fetch_excerpt(self, url: str) -> str:
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        return self.excerpts.get(url, self.excerpt)


@pytest.fixture()
def settings() -> Settings:
    return Settings.model_validate(
        {
            "OPENAI_API_KEY": "sk-test",
            "TRIAGE_CATEGORY_BATCH_SIZE": 2,
            "TRIAGE_SUMMARY_BATCH_SIZE": 2,
        }
    )


@pytest.fixture()
def bookmarks() -> list[Bookmark]:
    return [
        Bookmark(id="b1", url="https://docs.python.org/3/", title="Python docs", folder_path="Dev", link_status="live"),
        Bookmark(
            id="b2",
            url="http://old.example.com/a",
            title="Moved article",
            folder_path="Reading",
            link_status="redirected",
            final_url="https://example.com/a",
            http_status_code=301,
        ),
        Bookmark(id="b3", url="https://gone.example.org/", title="Gone page", link_status="dead", http_status_code=404),
        Bookmark(id="b4", url="ftp://files.example.net/pub", title="FTP mirror", folder_path="Dev"),
        Bookmark(id="b5", url="https://news.ycombinator.com/", title="Hacker News", link_status="live"),
    ]


@pytest.fixture()
def store(bookmarks: list[Bookmark]) -> InMemoryTriageStore:
    return InMemoryTriageStore(bookmarks)


@pytest.fixture()
def llm() -> ScriptedLlm:
    return ScriptedLlm()


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()
