"""
Boundary schemas for language-model responses.

Envelopes are strict (a malformed envelope fails the whole call); items are parsed one by one so
a single bad item only affects its own bookmark.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class DiscoveredCategory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str


class DiscoveryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    categories: list[Any] = Field(default_factory=list)

    def names(self) -> list[str]:
        out: list[str] = []
        for entry in self.categories:
            if isinstance(entry, str):
                out.append(entry)
                continue
            try:
                out.append(DiscoveredCategory.model_validate(entry).name)
            except ValidationError:
                continue
        return out


class CategoryItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    category: str | None = None
    tags: list[Any] = Field(default_factory=list)
    # Left untyped so "high" or True are rejected during normalization instead of being coerced.
    confidence: Any = None
    reason_code: str | None = Field(default=None, alias="reasonCode")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) and not isinstance(v, bool) else v

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


class SummaryItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    summary: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) and not isinstance(v, bool) else v


class ItemsEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: list[Any]


def parse_items(data: Any, item_model: type[BaseModel]) -> dict[str, Any]:
    """
    Validates `{"items": [...]}` and returns valid items keyed by id.

    Raises ValidationError when the envelope itself is malformed. Invalid items are dropped.
    """
    envelope = ItemsEnvelope.model_validate(data)
    by_id: dict[str, Any] = {}
    for raw in envelope.items:
        try:
            item = item_model.model_validate(raw)
        except ValidationError:
            continue
        by_id.setdefault(item.id, item)
    return by_id
