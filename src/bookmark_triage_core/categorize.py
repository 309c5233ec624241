from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import ValidationError

from bookmark_triage_core.collection import CollectionDigest
from bookmark_triage_core.llm import JsonCompletionClient, LlmCallError
from bookmark_triage_core.models import CategoryAssignment, PreparedBookmark
from bookmark_triage_core.schemas import CategoryItem, DiscoveryResponse, parse_items
from bookmark_triage_core.usage import RunCounters, UsageCounters
from bookmark_triage_core.util import chunked, normalize_whitespace

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ["Reference", "Engineering", "Learning", "News", "Tools", "Entertainment"]
MAX_CATEGORIES = 16
MAX_TAGS = 5
CATEGORY_EXCERPT_CHARS = 1000

REASON_NOT_ENOUGH_SIGNAL = "not_enough_signal"
REASON_MISSING_MODEL_OUTPUT = "missing_model_output"
REASON_CATEGORIZATION_FAILED = "categorization_failed"

DISCOVERY_SYSTEM_PROMPT = (
    "You are categorizing a personal bookmark collection. Infer sensible high-level categories "
    "from the collection itself, with no predefined taxonomy. "
    'Return JSON of the form {"categories": [{"name": "..."}]}.'
)
CATEGORIZE_SYSTEM_PROMPT = (
    "Assign one category from the provided list, 2-5 descriptive tags, and a reason code when "
    'uncategorizable. Return strict JSON of the form {"items": [{"id": "...", "category": "...", '
    '"tags": ["..."], "confidence": 0.0, "reasonCode": null}]}.'
)

ProgressCallback = Callable[[], Awaitable[None]]


def normalize_category_names(names: Sequence[str]) -> list[str]:
    out: list[str] = []
    for name in names:
        cleaned = normalize_whitespace(name)
        if cleaned and cleaned not in out:
            out.append(cleaned)
    return out[:MAX_CATEGORIES]


async def discover_categories(
    client: JsonCompletionClient,
    digest: CollectionDigest,
    *,
    model: str,
    usage: UsageCounters,
) -> list[str]:
    """
    One call which proposes the taxonomy for the run. Falls back to DEFAULT_CATEGORIES when the
    model gives nothing usable; transport failures propagate.
    """
    response = await client.complete_json(
        model=model,
        system_prompt=DISCOVERY_SYSTEM_PROMPT,
        user_payload={
            "task": "Return 8 to 16 category names only. Keep names concise.",
            "collection": digest.model_dump(by_alias=True),
        },
        temperature=0.2,
    )
    usage.record(model, response.prompt_tokens, response.completion_tokens)

    try:
        names = DiscoveryResponse.model_validate(response.data).names()
    except ValidationError:
        logger.warning("category_discovery_malformed", extra={"model": model})
        names = []

    categories = normalize_category_names(names)
    if not categories:
        logger.warning("category_discovery_empty_using_defaults", extra={"model": model})
        return list(DEFAULT_CATEGORIES)
    return categories


def normalize_confidence(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return min(1.0, max(0.0, float(value)))


def normalize_tags(tags: Sequence[Any]) -> list[str]:
    out = [normalize_whitespace(t) for t in tags if isinstance(t, str)]
    return [t for t in out if t][:MAX_TAGS]


def normalize_category_result(
    bookmark_id: str,
    item: CategoryItem | None,
    categories: Sequence[str],
) -> CategoryAssignment:
    if item is None:
        return CategoryAssignment(
            bookmark_id=bookmark_id,
            category=None,
            tags=[],
            confidence=None,
            reason_code=REASON_MISSING_MODEL_OUTPUT,
        )

    category = item.category if item.category in categories else None
    reason_code = None
    if category is None:
        reason_code = normalize_whitespace(item.reason_code) or REASON_NOT_ENOUGH_SIGNAL
    return CategoryAssignment(
        bookmark_id=bookmark_id,
        category=category,
        tags=normalize_tags(item.tags),
        confidence=normalize_confidence(item.confidence),
        reason_code=reason_code,
    )


def _batch_payload(categories: Sequence[str], batch: Sequence[PreparedBookmark]) -> dict[str, Any]:
    return {
        "categories": list(categories),
        "bookmarks": [
            {
                "id": b.id,
                "title": b.title,
                "url": b.url,
                "finalUrl": b.bookmark.final_url,
                "folderPath": b.bookmark.folder_path,
                "sourceType": b.source_type,
                "excerpt": b.excerpt[:CATEGORY_EXCERPT_CHARS],
            }
            for b in batch
        ],
    }


async def categorize_bookmarks(
    client: JsonCompletionClient,
    categories: Sequence[str],
    bookmarks: Sequence[PreparedBookmark],
    *,
    model: str,
    usage: UsageCounters,
    counters: RunCounters,
    batch_size: int = 24,
    on_batch_done: ProgressCallback | None = None,
) -> dict[str, CategoryAssignment]:
    results: dict[str, CategoryAssignment] = {}

    for batch in chunked(bookmarks, batch_size):
        try:
            response = await client.complete_json(
                model=model,
                system_prompt=CATEGORIZE_SYSTEM_PROMPT,
                user_payload=_batch_payload(categories, batch),
                temperature=0.1,
            )
            usage.record(model, response.prompt_tokens, response.completion_tokens)
            by_id = parse_items(response.data, CategoryItem)
        except (LlmCallError, ValidationError) as e:
            logger.warning(
                "categorization_batch_failed",
                extra={"batch_size": len(batch), "error": str(e)[:200]},
            )
            for bookmark in batch:
                results[bookmark.id] = CategoryAssignment(
                    bookmark_id=bookmark.id,
                    category=None,
                    tags=[],
                    confidence=None,
                    reason_code=REASON_CATEGORIZATION_FAILED,
                )
                counters.bump(processed=1, uncategorized=1, failed=1)
        else:
            for bookmark in batch:
                assignment = normalize_category_result(bookmark.id, by_id.get(bookmark.id), categories)
                results[bookmark.id] = assignment
                if assignment.category:
                    counters.bump(processed=1, categorized=1)
                else:
                    counters.bump(processed=1, uncategorized=1)

        if on_batch_done is not None:
            await on_batch_done()

    return results
