"""Call-boundary input models.

Each public engine operation validates its arguments by constructing the
corresponding model, so malformed input (empty content, confidence outside
[0, 1], unknown category) raises ``pydantic.ValidationError`` before any
storage mutation happens.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from .validators import (
    Category,
    ContextFormat,
    MemoryId,
    Namespace,
    NonNegativeFloat,
    NonNegativeInt,
    ResolutionAction,
    Tags,
    UnitFloat,
)


class StoreMemoryParams(BaseModel):
    """Validated input for ``store_memory``."""

    content: str = Field(min_length=1)
    entity: str | None = None
    category: Category | None = None
    confidence: UnitFloat | None = None
    namespace: Namespace | None = None
    tags: Tags = Field(default_factory=set)
    source: str = "manual"
    decay_rate: NonNegativeFloat | None = None
    force: bool = False

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v

    @field_validator("entity")
    @classmethod
    def blank_entity_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class RecallParams(BaseModel):
    """Validated input for ``recall``.

    ``limit=0`` is legal and yields no results.
    """

    query: str = Field(min_length=1)
    limit: NonNegativeInt | None = None
    category: Category | None = None
    namespace: Namespace | None = None
    threshold: NonNegativeFloat | None = None

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be blank")
        return v


class ConsolidateParams(BaseModel):
    """Validated input for ``consolidate``."""

    detect_duplicates: bool = True
    detect_contradictions: bool = True
    apply_decay: bool = True
    cleanup_stale: bool = False
    duplicate_threshold: UnitFloat | None = None


class FeedbackParams(BaseModel):
    memory_id: MemoryId
    helpful: bool
    context: str | None = None


class ResolveParams(BaseModel):
    contradiction_id: MemoryId
    action: ResolutionAction


class ContextParams(BaseModel):
    """Validated input for ``generate_context``."""

    query: str | None = None
    namespace: Namespace | None = None
    limit: int = Field(default=10, ge=0)
    format: ContextFormat = "markdown"
    include_metadata: bool = False
    categories: list[Category] | None = None
    max_tokens: int = Field(default=1000, ge=0)
