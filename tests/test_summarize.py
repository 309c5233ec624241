from __future__ import annotations

import pytest

from bookmark_triage_core.llm import JsonCompletion, LlmCallError
from bookmark_triage_core.models import Bookmark, CategoryAssignment, PreparedBookmark
from bookmark_triage_core.summarize import (
    local_fallback_summary,
    normalize_summary,
    summarize_bookmarks,
)
from bookmark_triage_core.usage import RunCounters, UsageCounters


def _prepared(
    bid: str = "b1",
    *,
    source_type: str = "live",
    url: str = "https://example.com/page",
    excerpt: str = "",
) -> PreparedBookmark:
    return PreparedBookmark(
        bookmark=Bookmark(id=bid, url=url, title="My Page"),
        source_type=source_type,  # type: ignore[arg-type]
        target_url=url,
        excerpt=excerpt,
        source_hash="h",
    )


def test_local_fallback_dead() -> None:
    text = local_fallback_summary(_prepared(source_type="dead", excerpt="ignored"))
    assert text.startswith("My Page could not be fetched because the page is no longer available.")


def test_local_fallback_unsupported_mentions_scheme() -> None:
    text = local_fallback_summary(_prepared(source_type="unsupported", url="ftp://files.example.net/x"))
    assert "unsupported URL scheme (ftp://)" in text
    assert text.startswith("My Page")


def test_local_fallback_unsupported_uses_final_url_scheme() -> None:
    prepared = PreparedBookmark(
        bookmark=Bookmark(id="b1", url="http://example.com/dl", title="Mirror", final_url="ftp://files.example.net/x"),
        source_type="unsupported",
        target_url="http://example.com/dl",
        excerpt="",
        source_hash="h",
    )
    assert "unsupported URL scheme (ftp://)" in local_fallback_summary(prepared)


def test_local_fallback_with_excerpt_uses_domain() -> None:
    text = local_fallback_summary(_prepared(url="https://Blog.Example.com/post", excerpt="hello"))
    assert "content related to blog.example.com" in text


def test_local_fallback_without_excerpt() -> None:
    text = local_fallback_summary(_prepared())
    assert text == (
        "My Page could not be fully analyzed from live content, so summary is based on available "
        "metadata."
    )


@pytest.mark.parametrize("raw", [None, "", "   short   ", "tiny text"])
def test_normalize_summary_falls_back_when_too_short(raw: str | None) -> None:
    bookmark = _prepared()
    assert normalize_summary(raw, bookmark) == local_fallback_summary(bookmark)


def test_normalize_summary_collapses_and_truncates() -> None:
    assert normalize_summary("  A   useful\n\nguide  ", _prepared()) == "A useful guide"
    assert len(normalize_summary("word " * 200, _prepared())) == 420


class _Llm:
    def __init__(self, *responses: object):
        self._responses = list(responses)
        self.payloads: list[dict] = []

    async def complete_json(self, *, model, system_prompt, user_payload, temperature):  # noqa: ANN001, ANN201
        self.payloads.append(user_payload)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return JsonCompletion(data=response, prompt_tokens=7, completion_tokens=3)


@pytest.mark.asyncio
async def test_summarize_bookmarks_skips_dead_and_unsupported() -> None:
    bookmarks = [
        _prepared("dead", source_type="dead"),
        _prepared("ftp", source_type="unsupported", url="ftp://x/y"),
        _prepared("live", excerpt="e" * 3000),
        _prepared("live2"),
    ]
    llm = _Llm(
        {
            "items": [
                {"id": "live", "summary": "A long enough summary of the page."},
                {"id": "live2", "summary": 42},
            ]
        }
    )
    counters = RunCounters()
    batches: list[list[str]] = []

    async def _done(batch: dict[str, str]) -> None:
        batches.append(sorted(batch))

    summaries = await summarize_bookmarks(
        llm,
        bookmarks,
        {"live": CategoryAssignment(bookmark_id="live", category="Tools", tags=["a"])},
        model="gpt-4.1-mini",
        usage=UsageCounters(),
        counters=counters,
        batch_size=16,
        on_batch_done=_done,
    )

    assert [b["id"] for b in llm.payloads[0]["bookmarks"]] == ["live", "live2"]
    assert llm.payloads[0]["bookmarks"][0]["category"] == "Tools"
    assert llm.payloads[0]["bookmarks"][0]["tags"] == ["a"]
    assert len(llm.payloads[0]["bookmarks"][0]["excerpt"]) == 2200
    assert summaries["live"] == "A long enough summary of the page."
    # invalid item shape -> local fallback
    assert summaries["live2"] == local_fallback_summary(bookmarks[3])
    assert summaries["dead"] == local_fallback_summary(bookmarks[0])
    assert batches == [["dead", "ftp"], ["live", "live2"]]
    assert counters.failed == 0


@pytest.mark.asyncio
async def test_summarize_batch_failure_counts_each_bookmark() -> None:
    bookmarks = [_prepared("a"), _prepared("b"), _prepared("c")]
    counters = RunCounters()
    usage = UsageCounters()

    summaries = await summarize_bookmarks(
        _Llm(LlmCallError("500"), {"items": [{"id": "c", "summary": "Another fine summary."}]}),
        bookmarks,
        {},
        model="gpt-4.1-mini",
        usage=usage,
        counters=counters,
        batch_size=2,
    )

    assert summaries["a"] == local_fallback_summary(bookmarks[0])
    assert summaries["c"] == "Another fine summary."
    assert counters.failed == 2
    assert usage.api_calls == 1
