from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from pydantic import BaseModel, Field

from bookmark_triage_core.models import Bookmark
from bookmark_triage_core.util import extract_domain, normalize_whitespace


class DomainCount(BaseModel):
    domain: str
    count: int


class FolderCount(BaseModel):
    folder: str
    count: int


class CollectionDigest(BaseModel):
    """Aggregate shape of the whole collection, sent once to seed category discovery."""

    top_domains: list[DomainCount] = Field(default_factory=list, serialization_alias="topDomains")
    top_folders: list[FolderCount] = Field(default_factory=list, serialization_alias="topFolders")
    sample_titles: list[str] = Field(default_factory=list, serialization_alias="sampleTitles")


def build_collection_digest(
    bookmarks: Sequence[Bookmark],
    *,
    top_n: int = 30,
    max_sample_titles: int = 150,
    max_title_chars: int = 140,
) -> CollectionDigest:
    domains: Counter[str] = Counter()
    folders: Counter[str] = Counter()
    for bookmark in bookmarks:
        domains[extract_domain(bookmark.final_url or bookmark.url)] += 1
        folder = (bookmark.folder_path or "").strip()
        if folder:
            folders[folder] += 1

    # Counter.most_common is a stable sort over insertion order.
    titles = [normalize_whitespace(b.title)[:max_title_chars] for b in bookmarks[:max_sample_titles]]
    return CollectionDigest(
        top_domains=[DomainCount(domain=d, count=c) for d, c in domains.most_common(top_n)],
        top_folders=[FolderCount(folder=f, count=c) for f, c in folders.most_common(top_n)],
        sample_titles=[t for t in titles if t],
    )
