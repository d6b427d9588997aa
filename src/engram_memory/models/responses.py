"""Service-layer response models.

Typed Pydantic models for everything the engine hands back to callers.
Callers get attribute access instead of ``result.get("key", default)``
roulette; transports serialise them with ``model_dump()``.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .contradiction import Contradiction
from .memory import Memory
from .validators import Category

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreResult(BaseModel):
    """Result of a ``store_memory()`` call."""

    status: Literal["created", "merged", "duplicate"]
    id: str
    message: str
    similarity: float | None = None
    memory: Memory | None = None
    existing_content: str | None = None
    # Proactive contradiction check against recent same-entity memories
    contradictions: list[Contradiction] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------


class ConsolidationResult(BaseModel):
    """Counts produced by one consolidation run.

    Counts are partial when ``errors`` is non-empty or ``cancelled`` is set:
    failed pairs are skipped, not retried.
    """

    duplicates_removed: int = 0
    contradictions_detected: int = 0
    memories_decayed: int = 0
    stale_cleaned: int = 0
    duration_ms: float = 0.0
    cancelled: bool = False
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class Overview(BaseModel):
    """Store-wide totals used by reports and the health score."""

    total_memories: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    by_namespace: dict[str, int] = Field(default_factory=dict)
    with_embeddings: int = 0
    created_last_7_days: int = 0
    created_last_30_days: int = 0
    avg_confidence: float = 0.0
    total_recalled: int = 0
    accessed_last_30_days: int = 0
    # Percentage (0-100) of memories recalled at least once
    recall_rate: int = 0


class StaleMemoryItem(BaseModel):
    id: str
    content: str
    category: Category
    entity: str | None = None
    confidence: float
    last_accessed: float | None = None
    access_count: int = 0
    days_since_access: int = 0


class NeverRecalledItem(BaseModel):
    id: str
    content: str
    category: Category
    entity: str | None = None
    confidence: float
    created_at: float
    days_since_creation: int = 0


class StaleMemoriesPage(BaseModel):
    items: list[StaleMemoryItem] = Field(default_factory=list)
    count: int = 0


class NeverRecalledPage(BaseModel):
    items: list[NeverRecalledItem] = Field(default_factory=list)
    count: int = 0


class ClusterMember(BaseModel):
    id: str
    content: str
    category: Category
    confidence: float
    access_count: int = 0


class DuplicateCluster(BaseModel):
    """A group of mutually similar memories and the weakest link inside it."""

    namespace: str
    memories: list[ClusterMember]
    # Minimum pairwise similarity observed among the cluster's edges
    similarity: float

    @property
    def size(self) -> int:
        return len(self.memories)


class DuplicateReport(BaseModel):
    clusters: list[DuplicateCluster] = Field(default_factory=list)
    # Memories that would go away if each cluster collapsed to one
    total_duplicates: int = 0


class TrendPoint(BaseModel):
    date: str  # YYYY-MM-DD, UTC
    created: int = 0
    avg_confidence: float | None = None


class Trends(BaseModel):
    daily: list[TrendPoint] = Field(default_factory=list)


class HealthReport(BaseModel):
    score: int
    overview: Overview
    duplicate_count: int
    trends: Trends


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


class FeedbackResult(BaseModel):
    """Result of a ``record_feedback()`` call."""

    feedback_id: str
    memory_id: str
    feedback_score: float
    feedback_count: int
    helpful_count: int
    unhelpful_count: int
    confidence_adjusted: bool = False
    new_confidence: float


class FeedbackEntry(BaseModel):
    id: str
    helpful: bool
    context: str | None = None
    created_at: float


class FeedbackStats(BaseModel):
    total_feedback: int = 0
    helpful_count: int = 0
    unhelpful_count: int = 0
    feedback_score: float = 0.0
    confidence: float = 0.8
    first_feedback_at: float | None = None
    last_feedback_at: float | None = None


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class ContextResult(BaseModel):
    """Pre-formatted context block for injection into an agent prompt."""

    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
