"""Memory-related data models.

Pydantic v2 models for stored memories and their ranked recall results.
Tags are a real ``set[str]`` here; the JSON encoding used by the record
store happens only in :meth:`Memory.to_row` / :meth:`Memory.from_row`.
"""

import json
import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .validators import (
    Category,
    MemoryId,
    Namespace,
    NonNegativeFloat,
    NonNegativeInt,
    SignedUnitFloat,
    Tags,
    UnitFloat,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

DEFAULT_NAMESPACE = "default"

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def float_to_iso(ts: float) -> str:
    """Convert float timestamp to ISO string (UTC, Z-suffix)."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def days_between(earlier: float, later: float) -> float:
    """Elapsed days from *earlier* to *later*, never negative."""
    return max(0.0, (later - earlier) / SECONDS_PER_DAY)


def generate_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Safe numeric parsing helpers (for legacy/malformed storage rows)
# ---------------------------------------------------------------------------


def _safe_float(v: Any, default: float = 0.0) -> float:
    """Convert *v* to float, returning *default* on failure or non-finite values."""
    try:
        result = float(v)
        return result if math.isfinite(result) else default
    except (TypeError, ValueError):
        return default


def _safe_int(v: Any, default: int = 0) -> int:
    """Convert *v* to int, returning *default* on failure."""
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _decode_tags(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, (list, tuple, set)):
        return list(raw)
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Malformed tags column {raw!r}, treating as comma-separated")
        return [t for t in str(raw).split(",") if t.strip()]
    return decoded if isinstance(decoded, list) else []


# ---------------------------------------------------------------------------
# Memory model
# ---------------------------------------------------------------------------


class Memory(BaseModel):
    """A single remembered fact with validated fields."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    id: MemoryId = Field(default_factory=generate_id)
    content: str = Field(min_length=1)
    entity: str | None = None
    category: Category = Category.FACT
    confidence: UnitFloat = 0.8
    embedding: list[float] | None = None
    namespace: Namespace = DEFAULT_NAMESPACE
    tags: Tags = Field(default_factory=set)
    source: str = "manual"

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    last_accessed: float | None = None
    access_count: NonNegativeInt = 0
    decay_rate: NonNegativeFloat = 0.01
    feedback_score: SignedUnitFloat = 0.0

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def last_activity(self) -> float:
        """``last_accessed`` if the memory was ever recalled, else ``created_at``."""
        return self.last_accessed if self.last_accessed is not None else self.created_at

    def days_since_access(self, now: float | None = None) -> float:
        return days_between(self.last_activity(), time.time() if now is None else now)

    def age_days(self, now: float | None = None) -> float:
        return days_between(self.created_at, time.time() if now is None else now)

    def to_row(self) -> dict[str, Any]:
        """Convert to a storage row. Embedding packing is left to the store."""
        return {
            "id": self.id,
            "content": self.content,
            "entity": self.entity,
            "category": self.category.value,
            "confidence": self.confidence,
            "namespace": self.namespace,
            "tags": json.dumps(sorted(self.tags)),
            "source": self.source,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_accessed": self.last_accessed,
            "access_count": self.access_count,
            "decay_rate": self.decay_rate,
            "feedback_score": self.feedback_score,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any], embedding: list[float] | None = None) -> "Memory":
        """Create a Memory from a storage row, tolerating legacy values."""
        category = row.get("category") or Category.FACT.value
        if category not in Category._value2member_map_:
            logger.warning(f"Unknown category {category!r} on memory {row.get('id')}, using 'fact'")
            category = Category.FACT.value

        last_accessed = row.get("last_accessed")
        return cls(
            id=row["id"],
            content=row["content"],
            entity=row.get("entity"),
            category=Category(category),
            confidence=min(1.0, max(0.0, _safe_float(row.get("confidence"), 0.8))),
            embedding=embedding,
            namespace=row.get("namespace") or DEFAULT_NAMESPACE,
            tags=_decode_tags(row.get("tags")),
            source=row.get("source") or "manual",
            created_at=_safe_float(row.get("created_at"), time.time()),
            updated_at=_safe_float(row.get("updated_at"), time.time()),
            last_accessed=_safe_float(last_accessed) if last_accessed is not None else None,
            access_count=max(0, _safe_int(row.get("access_count"))),
            decay_rate=max(0.0, _safe_float(row.get("decay_rate"), 0.01)),
            feedback_score=min(1.0, max(-1.0, _safe_float(row.get("feedback_score")))),
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Response shape for callers: no embedding, ISO timestamps added."""
        data = self.model_dump(exclude={"embedding"}, mode="json")
        data["tags"] = sorted(self.tags)
        data["created_at_iso"] = float_to_iso(self.created_at)
        data["updated_at_iso"] = float_to_iso(self.updated_at)
        data["last_accessed_iso"] = float_to_iso(self.last_accessed) if self.last_accessed is not None else None
        return data


class ScoreBreakdown(BaseModel):
    """The five recall signals and their weighted total."""

    similarity: float = 0.0
    recency: float = 0.0
    confidence: float = 0.0
    access: float = 0.0
    fts_boost: float = 0.0
    final: float = 0.0


class RankedMemory(BaseModel):
    """Memory recall result with its score and per-signal breakdown."""

    memory: Memory
    score: float
    score_breakdown: ScoreBreakdown

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.memory.to_public_dict(),
            "score": self.score,
            "score_breakdown": self.score_breakdown.model_dump(),
        }
