from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from typing import TypeVar
from urllib.parse import urlparse

T = TypeVar("T")

_WS_RE = re.compile(r"\s+")


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_whitespace(text: str | None) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def extract_domain(raw_url: str) -> str:
    """
    Lower-cased host of `raw_url`, or "invalid-url" when the URL has no parsable host.
    """
    try:
        host = urlparse(raw_url).hostname
    except ValueError:
        return "invalid-url"
    return host.lower() if host else "invalid-url"


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
