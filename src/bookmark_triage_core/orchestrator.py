"""
Triage run orchestration.

A run snapshots the bookmark collection, fingerprints it against the triage cache, and sends
only stale bookmarks through category discovery, batch categorization and batch summarization.
At most one run is active per process; `start_run` never waits for the pipeline.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from uuid import uuid4

from bookmark_triage_core.acquisition import ExcerptFetcher, PageFetcher, prepare_bookmarks
from bookmark_triage_core.categorize import categorize_bookmarks, discover_categories
from bookmark_triage_core.collection import build_collection_digest
from bookmark_triage_core.config import Settings
from bookmark_triage_core.fingerprint import is_cache_valid
from bookmark_triage_core.llm import ChatJsonClient, JsonCompletionClient
from bookmark_triage_core.models import (
    Bookmark,
    CategoryAssignment,
    PreparedBookmark,
    RunProgress,
    RunStatus,
    RunSummary,
    Stage,
    TriageRow,
    TriageRun,
)
from bookmark_triage_core.repositories.triage import TriageStore
from bookmark_triage_core.summarize import local_fallback_summary, summarize_bookmarks
from bookmark_triage_core.usage import RunCounters, UsageCounters, snapshot_progress

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNCATEGORIZED_LIMIT = 100
ABANDONED_RUN_MESSAGE = "interrupted before completion"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StartRunResult:
    run_id: str
    already_running: bool


@dataclass
class RuntimeStatus:
    run_id: str
    status: RunStatus
    stage: Stage
    started_at: datetime
    total_bookmarks: int
    finished_at: datetime | None = None
    counters: RunCounters = field(default_factory=RunCounters)
    usage: UsageCounters = field(default_factory=UsageCounters)
    last_error: str | None = None

    def progress(self) -> RunProgress:
        return snapshot_progress(self.counters, self.usage)

    @classmethod
    def from_run(cls, run: TriageRun) -> RuntimeStatus:
        stage: Stage
        if run.status == "completed":
            stage = "completed"
        elif run.status == "failed":
            stage = "failed"
        else:
            stage = "idle"
        p = run.progress
        return cls(
            run_id=run.id,
            status=run.status,
            stage=stage,
            started_at=run.started_at,
            finished_at=run.finished_at,
            total_bookmarks=run.total_bookmarks,
            counters=RunCounters(
                processed=p.processed_count,
                cached=p.cached_count,
                categorized=p.categorized_count,
                uncategorized=p.uncategorized_count,
                failed=p.failed_count,
            ),
            usage=UsageCounters(
                api_calls=p.api_calls,
                prompt_tokens=p.prompt_tokens,
                completion_tokens=p.completion_tokens,
                estimated_cost_usd=p.estimated_cost_usd,
            ),
            last_error=run.error_message,
        )


class RunRegistry:
    """
    Holds the current run of the process. The check-and-install in `start_run` happens under
    `lock`; after that only the run's own task writes to the status.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.status: RuntimeStatus | None = None
        self.task: asyncio.Task[None] | None = None

    def active_run_id(self) -> str | None:
        if self.status is not None and self.status.status == "running":
            return self.status.run_id
        return None


process_registry = RunRegistry()


class TriageOrchestrator:
    def __init__(
        self,
        store: TriageStore,
        *,
        settings: Settings | None = None,
        llm_client: JsonCompletionClient | None = None,
        fetcher: ExcerptFetcher | None = None,
        registry: RunRegistry | None = None,
    ):
        self._store = store
        self._settings = settings or Settings()
        self._llm_client = llm_client
        self._fetcher = fetcher or PageFetcher(
            timeout_s=self._settings.fetch_timeout_s,
            user_agent=self._settings.user_agent,
        )
        self._registry = registry or process_registry

    async def _db(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def start_run(self, *, ignore_cache: bool = False) -> StartRunResult:
        """
        Starts a run in the background, or returns the active run of this process.

        The single-flight guard is per process. Runs still `running` in the database are failed
        as abandoned only once they are older than `abandoned_run_after_s`.
        """
        async with self._registry.lock:
            active_id = self._registry.active_run_id()
            if active_id is not None:
                return StartRunResult(run_id=active_id, already_running=True)

            started_at = _utcnow()
            abandoned = await self._db(
                self._store.fail_abandoned_runs,
                finished_at=started_at,
                started_before=started_at - timedelta(seconds=self._settings.abandoned_run_after_s),
                error_message=ABANDONED_RUN_MESSAGE,
            )
            if abandoned:
                logger.warning("triage_abandoned_runs_failed", extra={"count": abandoned})

            bookmarks = await self._db(self._store.list_bookmarks_for_triage)
            run_id = str(uuid4())
            await self._db(
                self._store.create_run,
                run_id=run_id,
                started_at=started_at,
                total_bookmarks=len(bookmarks),
                category_model=self._settings.category_model,
                summary_model=self._settings.summary_model,
                prompt_version=self._settings.prompt_version,
            )

            status = RuntimeStatus(
                run_id=run_id,
                status="running",
                stage="preparing",
                started_at=started_at,
                total_bookmarks=len(bookmarks),
            )
            self._registry.status = status
            self._registry.task = asyncio.create_task(
                self._execute_run(status, bookmarks, ignore_cache=ignore_cache),
                name=f"triage-run-{run_id}",
            )

        logger.info(
            "triage_run_started",
            extra={"run_id": run_id, "total_bookmarks": len(bookmarks), "ignore_cache": ignore_cache},
        )
        return StartRunResult(run_id=run_id, already_running=False)

    async def wait(self) -> None:
        """Blocks until the spawned run task (if any) has finished."""
        task = self._registry.task
        if task is not None:
            await task

    async def get_runtime_status(self) -> RuntimeStatus | None:
        if self._registry.status is not None:
            return copy.deepcopy(self._registry.status)
        latest = await self._db(self._store.get_latest_run)
        return RuntimeStatus.from_run(latest) if latest else None

    async def get_latest_summary(self) -> RunSummary | None:
        latest = await self._db(self._store.get_latest_run)
        if latest is None:
            return None
        categories = await self._db(self._store.list_category_counts, latest.id)
        uncategorized = await self._db(
            self._store.list_uncategorized, latest.id, UNCATEGORIZED_LIMIT
        )
        return RunSummary(run=latest, categories=categories, uncategorized=uncategorized)

    async def _execute_run(
        self,
        status: RuntimeStatus,
        bookmarks: Sequence[Bookmark],
        *,
        ignore_cache: bool,
    ) -> None:
        started = time.monotonic()
        try:
            await self._run_pipeline(status, bookmarks, ignore_cache=ignore_cache)
            duration_ms = int((time.monotonic() - started) * 1000)
            finished_at = _utcnow()
            await self._db(
                self._store.complete_run,
                status.run_id,
                finished_at=finished_at,
                duration_ms=duration_ms,
                progress=status.progress(),
            )
            status.finished_at = finished_at
            status.status = "completed"
            status.stage = "completed"
            logger.info(
                "triage_run_completed",
                extra={
                    "run_id": status.run_id,
                    "duration_ms": duration_ms,
                    "processed": status.counters.processed,
                    "cached": status.counters.cached,
                    "failed": status.counters.failed,
                    "api_calls": status.usage.api_calls,
                    "estimated_cost_usd": round(status.usage.estimated_cost_usd, 6),
                },
            )
        except asyncio.CancelledError:
            await self._record_failure(status, "run cancelled", started)
            raise
        except Exception as e:  # noqa: BLE001
            logger.exception("triage_run_failed", extra={"run_id": status.run_id})
            await self._record_failure(status, str(e) or type(e).__name__, started)

    async def _record_failure(self, status: RuntimeStatus, message: str, started: float) -> None:
        finished_at = _utcnow()
        status.counters.bump(failed=1)
        status.status = "failed"
        status.stage = "failed"
        status.finished_at = finished_at
        status.last_error = message
        try:
            await self._db(
                self._store.fail_run,
                status.run_id,
                finished_at=finished_at,
                duration_ms=int((time.monotonic() - started) * 1000),
                progress=status.progress(),
                error_message=message,
            )
        except Exception:  # noqa: BLE001
            logger.exception("triage_run_fail_not_recorded", extra={"run_id": status.run_id})

    def _client(self) -> JsonCompletionClient:
        if self._llm_client is not None:
            return self._llm_client
        return ChatJsonClient(
            base_url=self._settings.openai_base_url,
            api_key=self._settings.require_api_key(),
            timeout_s=self._settings.llm_timeout_s,
        )

    async def _flush_progress(self, status: RuntimeStatus) -> None:
        await self._db(self._store.update_run_progress, status.run_id, status.progress())

    def _row(
        self,
        run_id: str,
        prepared: PreparedBookmark,
        *,
        assignment: CategoryAssignment | None,
        summary: str | None,
        at: datetime,
    ) -> TriageRow:
        return TriageRow(
            bookmark_id=prepared.id,
            triage_run_id=run_id,
            source_hash=prepared.source_hash,
            source_type=prepared.source_type,
            category=assignment.category if assignment else None,
            tags=list(assignment.tags) if assignment else [],
            summary=summary,
            reason_code=assignment.reason_code if assignment else None,
            confidence=assignment.confidence if assignment else None,
            categorized_at=at,
            category_model=self._settings.category_model,
            summary_model=self._settings.summary_model,
            prompt_version=self._settings.prompt_version,
        )

    async def _run_pipeline(
        self,
        status: RuntimeStatus,
        bookmarks: Sequence[Bookmark],
        *,
        ignore_cache: bool,
    ) -> None:
        settings = self._settings
        client = self._client()
        run_id = status.run_id

        status.stage = "preparing"
        cache = await self._db(self._store.get_cached_triages)
        prepared = await prepare_bookmarks(
            bookmarks, self._fetcher, concurrency=settings.fetch_concurrency
        )

        now = _utcnow()
        cached_rows: list[TriageRow] = []
        to_process: list[PreparedBookmark] = []
        for p in prepared:
            cached = cache.get(p.id)
            valid = is_cache_valid(
                cached,
                p,
                category_model=settings.category_model,
                summary_model=settings.summary_model,
                prompt_version=settings.prompt_version,
                ignore_cache=ignore_cache,
            )
            if not valid or cached is None:
                to_process.append(p)
                continue
            # Re-stamp with this run so per-run summaries include cache hits.
            cached_rows.append(
                self._row(
                    run_id,
                    p,
                    assignment=CategoryAssignment(
                        bookmark_id=p.id,
                        category=cached.category,
                        tags=list(cached.tags),
                        confidence=cached.confidence,
                        reason_code=cached.reason_code,
                    ),
                    summary=cached.summary,
                    at=now,
                )
            )
            if cached.category:
                status.counters.bump(processed=1, cached=1, categorized=1)
            else:
                status.counters.bump(processed=1, cached=1, uncategorized=1)

        await self._db(self._store.upsert_bookmark_triages, cached_rows)
        await self._flush_progress(status)
        logger.info(
            "triage_cache_checked",
            extra={"run_id": run_id, "cached": len(cached_rows), "to_process": len(to_process)},
        )

        status.stage = "discovering_categories"
        categories: list[str] = []
        if to_process:
            digest = build_collection_digest(bookmarks)
            categories = await discover_categories(
                client, digest, model=settings.category_model, usage=status.usage
            )
            logger.info(
                "triage_categories_discovered",
                extra={"run_id": run_id, "categories": categories},
            )

        async def _after_batch() -> None:
            await self._flush_progress(status)

        status.stage = "categorizing"
        assignments = await categorize_bookmarks(
            client,
            categories,
            to_process,
            model=settings.category_model,
            usage=status.usage,
            counters=status.counters,
            batch_size=settings.category_batch_size,
            on_batch_done=_after_batch,
        )

        by_id = {p.id: p for p in to_process}
        written: set[str] = set()

        async def _persist_summaries(batch: Mapping[str, str]) -> None:
            at = _utcnow()
            rows = [
                self._row(run_id, by_id[bid], assignment=assignments.get(bid), summary=text, at=at)
                for bid, text in batch.items()
                if bid in by_id and bid not in written
            ]
            await self._db(self._store.upsert_bookmark_triages, rows)
            written.update(row.bookmark_id for row in rows)
            await self._flush_progress(status)

        status.stage = "summarizing"
        summaries = await summarize_bookmarks(
            client,
            to_process,
            assignments,
            model=settings.summary_model,
            usage=status.usage,
            counters=status.counters,
            batch_size=settings.summary_batch_size,
            on_batch_done=_persist_summaries,
        )

        status.stage = "finalizing"
        at = _utcnow()
        remaining = [
            self._row(
                run_id,
                p,
                assignment=assignments.get(p.id),
                summary=summaries.get(p.id) or local_fallback_summary(p),
                at=at,
            )
            for p in to_process
            if p.id not in written
        ]
        await self._db(self._store.upsert_bookmark_triages, remaining)
        await self._flush_progress(status)
