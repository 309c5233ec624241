from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from bookmark_triage_core.fingerprint import classified_url
from bookmark_triage_core.llm import JsonCompletionClient, LlmCallError
from bookmark_triage_core.models import CategoryAssignment, PreparedBookmark
from bookmark_triage_core.schemas import SummaryItem, parse_items
from bookmark_triage_core.usage import RunCounters, UsageCounters
from bookmark_triage_core.util import chunked, extract_domain, normalize_whitespace

logger = logging.getLogger(__name__)

SUMMARY_EXCERPT_CHARS = 2200
MIN_SUMMARY_CHARS = 12
MAX_SUMMARY_CHARS = 420
LOCAL_ONLY_SOURCE_TYPES = {"dead", "unsupported"}

SUMMARY_SYSTEM_PROMPT = (
    "Write concise 1-2 sentence summaries for bookmarks using the supplied excerpt and metadata. "
    'Return strict JSON of the form {"items": [{"id": "...", "summary": "..."}]}.'
)


def local_fallback_summary(bookmark: PreparedBookmark) -> str:
    if bookmark.source_type == "dead":
        return (
            f"{bookmark.title} could not be fetched because the page is no longer available. "
            "Summary inferred from URL and folder metadata."
        )
    if bookmark.source_type == "unsupported":
        scheme = classified_url(bookmark.bookmark).split(":", 1)[0]
        return (
            f"{bookmark.title} could not be content-fetched due to an unsupported URL scheme "
            f"({scheme}://). Summary inferred from title and URL metadata."
        )
    if bookmark.excerpt:
        return (
            f"{bookmark.title} appears to cover content related to "
            f"{extract_domain(bookmark.target_url)}. Summary generated from a limited excerpt."
        )
    return (
        f"{bookmark.title} could not be fully analyzed from live content, so summary is based on "
        "available metadata."
    )


def normalize_summary(raw: str | None, bookmark: PreparedBookmark) -> str:
    text = normalize_whitespace(raw)
    if len(text) < MIN_SUMMARY_CHARS:
        return local_fallback_summary(bookmark)
    return text[:MAX_SUMMARY_CHARS]


def _batch_payload(
    batch: Sequence[PreparedBookmark],
    assignments: Mapping[str, CategoryAssignment],
) -> dict[str, Any]:
    items = []
    for b in batch:
        assignment = assignments.get(b.id)
        items.append(
            {
                "id": b.id,
                "title": b.title,
                "url": b.url,
                "targetUrl": b.target_url,
                "folderPath": b.bookmark.folder_path,
                "category": assignment.category if assignment else None,
                "tags": list(assignment.tags) if assignment else [],
                "excerpt": b.excerpt[:SUMMARY_EXCERPT_CHARS],
            }
        )
    return {"bookmarks": items}


async def summarize_bookmarks(
    client: JsonCompletionClient,
    bookmarks: Sequence[PreparedBookmark],
    assignments: Mapping[str, CategoryAssignment],
    *,
    model: str,
    usage: UsageCounters,
    counters: RunCounters,
    batch_size: int = 16,
    on_batch_done: Callable[[dict[str, str]], Awaitable[None]] | None = None,
) -> dict[str, str]:
    """
    Summaries keyed by bookmark id. `on_batch_done` receives each finished group of summaries,
    starting with the locally generated ones.
    """
    summaries: dict[str, str] = {}
    local: dict[str, str] = {}
    pending: list[PreparedBookmark] = []
    for bookmark in bookmarks:
        if bookmark.source_type in LOCAL_ONLY_SOURCE_TYPES:
            local[bookmark.id] = local_fallback_summary(bookmark)
        else:
            pending.append(bookmark)
    summaries.update(local)
    if local and on_batch_done is not None:
        await on_batch_done(local)

    for batch in chunked(pending, batch_size):
        done: dict[str, str] = {}
        try:
            response = await client.complete_json(
                model=model,
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                user_payload=_batch_payload(batch, assignments),
                temperature=0.2,
            )
            usage.record(model, response.prompt_tokens, response.completion_tokens)
            by_id = parse_items(response.data, SummaryItem)
        except (LlmCallError, ValidationError) as e:
            logger.warning(
                "summary_batch_failed",
                extra={"batch_size": len(batch), "error": str(e)[:200]},
            )
            for bookmark in batch:
                done[bookmark.id] = local_fallback_summary(bookmark)
                counters.bump(failed=1)
        else:
            for bookmark in batch:
                item = by_id.get(bookmark.id)
                done[bookmark.id] = normalize_summary(item.summary if item else None, bookmark)

        summaries.update(done)
        if on_batch_done is not None:
            await on_batch_done(done)

    return summaries
