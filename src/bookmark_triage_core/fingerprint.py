from __future__ import annotations

from bookmark_triage_core.models import Bookmark, CachedTriageRecord, PreparedBookmark, SourceType
from bookmark_triage_core.util import sha256_text

HASH_EXCERPT_CHARS = 1000


def classified_url(bookmark: Bookmark) -> str:
    """URL whose scheme decides the source type: the final URL when known."""
    return bookmark.final_url or bookmark.url


def resolve_source_type(bookmark: Bookmark) -> SourceType:
    url = classified_url(bookmark)
    if not url.startswith(("http://", "https://")):
        return "unsupported"
    if bookmark.link_status == "dead":
        return "dead"
    if bookmark.link_status == "redirected":
        return "redirected"
    return "live"


def resolve_target_url(bookmark: Bookmark) -> str:
    if bookmark.link_status == "redirected":
        return bookmark.final_url or bookmark.url
    return bookmark.url


def source_hash(bookmark: Bookmark, excerpt: str) -> str:
    """
    Cache key over the mutable attributes of a bookmark plus the head of its excerpt.

    Not a security boundary: equality is all that matters.
    """
    parts = [
        bookmark.url,
        bookmark.title,
        bookmark.folder_path or "",
        bookmark.link_status or "",
        bookmark.final_url or "",
        excerpt[:HASH_EXCERPT_CHARS],
    ]
    return sha256_text("|".join(parts))


def is_cache_valid(
    cached: CachedTriageRecord | None,
    prepared: PreparedBookmark,
    *,
    category_model: str,
    summary_model: str,
    prompt_version: str,
    ignore_cache: bool = False,
) -> bool:
    if ignore_cache or cached is None:
        return False
    return (
        cached.source_hash == prepared.source_hash
        and cached.category_model == category_model
        and cached.summary_model == summary_model
        and cached.prompt_version == prompt_version
    )
