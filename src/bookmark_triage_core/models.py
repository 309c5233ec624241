from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

LinkStatus = Literal["live", "redirected", "dead", "unknown"]
SourceType = Literal["live", "redirected", "dead", "unsupported"]
RunStatus = Literal["running", "completed", "failed"]
Stage = Literal[
    "idle",
    "preparing",
    "discovering_categories",
    "categorizing",
    "summarizing",
    "finalizing",
    "completed",
    "failed",
]


@dataclass(frozen=True)
class Bookmark:
    id: str
    url: str
    title: str
    folder_path: str | None = None
    link_status: LinkStatus | None = None
    final_url: str | None = None
    http_status_code: int | None = None


@dataclass(frozen=True)
class PreparedBookmark:
    bookmark: Bookmark
    source_type: SourceType
    target_url: str
    excerpt: str
    source_hash: str

    @property
    def id(self) -> str:
        return self.bookmark.id

    @property
    def title(self) -> str:
        return self.bookmark.title

    @property
    def url(self) -> str:
        return self.bookmark.url


@dataclass(frozen=True)
class CachedTriageRecord:
    bookmark_id: str
    source_hash: str
    source_type: str
    category: str | None
    tags: list[str]
    summary: str | None
    reason_code: str | None
    confidence: float | None
    category_model: str
    summary_model: str
    prompt_version: str


@dataclass(frozen=True)
class CategoryAssignment:
    bookmark_id: str
    category: str | None
    tags: list[str] = field(default_factory=list)
    confidence: float | None = None
    reason_code: str | None = None


@dataclass(frozen=True)
class TriageRow:
    bookmark_id: str
    triage_run_id: str
    source_hash: str
    source_type: str
    category: str | None
    tags: list[str]
    summary: str | None
    reason_code: str | None
    confidence: float | None
    categorized_at: datetime
    category_model: str
    summary_model: str
    prompt_version: str


@dataclass(frozen=True)
class RunProgress:
    processed_count: int = 0
    cached_count: int = 0
    categorized_count: int = 0
    uncategorized_count: int = 0
    failed_count: int = 0
    api_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0


@dataclass(frozen=True)
class TriageRun:
    id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int
    total_bookmarks: int
    category_model: str
    summary_model: str
    prompt_version: str
    progress: RunProgress = field(default_factory=RunProgress)
    error_message: str | None = None


@dataclass(frozen=True)
class CategoryCount:
    category: str
    count: int


@dataclass(frozen=True)
class UncategorizedBookmark:
    bookmark_id: str
    title: str
    url: str
    reason_code: str


@dataclass(frozen=True)
class RunSummary:
    run: TriageRun
    categories: list[CategoryCount]
    uncategorized: list[UncategorizedBookmark]
