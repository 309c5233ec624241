from __future__ import annotations

import logging
from html.parser import HTMLParser

from bookmark_triage_core.util import normalize_whitespace

logger = logging.getLogger(__name__)

_SKIP_TAGS = {"script", "style"}


class _TextParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag.lower() in _SKIP_TAGS:
            self._skip_depth += 1
        else:
            # Tag boundaries separate words: "<p>a</p><p>b</p>" is "a b".
            self._parts.append(" ")

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() in _SKIP_TAGS:
            self._skip_depth = max(self._skip_depth - 1, 0)
        else:
            self._parts.append(" ")

    def handle_data(self, data: str) -> None:
        if self._skip_depth == 0:
            self._parts.append(data)

    def text(self) -> str:
        return normalize_whitespace("".join(self._parts))


def html_to_text(html: str, *, max_chars: int | None = None) -> str:
    """
    Plain text of an HTML document: script/style bodies dropped, tags stripped, entities
    decoded and whitespace collapsed.

    Safe for dirty HTML: parser errors leave whatever text was collected so far.
    """
    parser = _TextParser()
    try:
        parser.feed(html or "")
        parser.close()
    except Exception as e:  # noqa: BLE001
        logger.debug("html_parse_failed", extra={"error": type(e).__name__, "chars": len(html or "")})
    text = parser.text()
    if max_chars is not None:
        text = text[:max_chars]
    return text
