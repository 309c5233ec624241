from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import httpx

from bookmark_triage_core.fingerprint import resolve_source_type, resolve_target_url, source_hash
from bookmark_triage_core.html_text import html_to_text
from bookmark_triage_core.models import Bookmark, PreparedBookmark

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
FETCHABLE_SOURCE_TYPES = {"live", "redirected"}


class ExcerptFetcher(Protocol):
    async def fetch_excerpt(self, url: str) -> str: ...


@dataclass(frozen=True)
class PageFetcher:
    timeout_s: float = 10.0
    max_excerpt_chars: int = 3000
    user_agent: str = "bookmark-manager-triage/1.0"
    transport: httpx.AsyncBaseTransport | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_s,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
            transport=self.transport,
        )

    async def _fetch(self, url: str) -> str:
        async with self._client() as client:
            r = await client.get(url)
            if not r.is_success:
                return ""
            content_type = (r.headers.get("content-type") or "").lower()
            if not any(ct in content_type for ct in HTML_CONTENT_TYPES):
                return ""
            return html_to_text(r.text, max_chars=self.max_excerpt_chars)

    async def fetch_excerpt(self, url: str) -> str:
        """
        Plain-text excerpt of `url`, or "" on any failure.

        The httpx timeout bounds each network phase; `wait_for` bounds the whole request.
        """
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=self.timeout_s)
        except Exception as e:  # noqa: BLE001
            logger.debug("page_fetch_failed", extra={"url": url, "error": type(e).__name__})
            return ""


async def _prepare_one(bookmark: Bookmark, fetcher: ExcerptFetcher) -> PreparedBookmark:
    source_type = resolve_source_type(bookmark)
    target_url = resolve_target_url(bookmark)
    excerpt = ""
    if source_type in FETCHABLE_SOURCE_TYPES:
        excerpt = await fetcher.fetch_excerpt(target_url)
    return PreparedBookmark(
        bookmark=bookmark,
        source_type=source_type,
        target_url=target_url,
        excerpt=excerpt,
        source_hash=source_hash(bookmark, excerpt),
    )


async def prepare_bookmarks(
    bookmarks: Sequence[Bookmark],
    fetcher: ExcerptFetcher,
    *,
    concurrency: int = 6,
) -> list[PreparedBookmark]:
    """
    Classifies, fetches and fingerprints every bookmark with at most `concurrency` fetches in
    flight. Results are returned in input order.

    If a worker raises, the remaining workers are cancelled before the error propagates.
    """
    if concurrency <= 0:
        raise ValueError("concurrency must be > 0")
    if not bookmarks:
        return []

    queue: asyncio.Queue[int] = asyncio.Queue()
    for index in range(len(bookmarks)):
        queue.put_nowait(index)
    results: list[PreparedBookmark | None] = [None] * len(bookmarks)

    async def _worker() -> None:
        while True:
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await _prepare_one(bookmarks[index], fetcher)

    workers = [asyncio.create_task(_worker()) for _ in range(min(concurrency, len(bookmarks)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return [r for r in results if r is not None]
