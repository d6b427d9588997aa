"""
Abstract record store interface.

The engine only ever talks to storage through this contract: durable CRUD,
full-text search and access-stat bookkeeping over memories, plus the
contradiction, feedback and reporting queries the engines need. Calls are
issued sequentially within one engine call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..models.contradiction import Contradiction
from ..models.memory import Memory
from ..models.validators import Category, ContradictionStatus

# Columns callers may change through update_memory()
UPDATABLE_FIELDS = frozenset(
    {
        "content",
        "entity",
        "category",
        "confidence",
        "embedding",
        "source",
        "namespace",
        "tags",
        "decay_rate",
        "access_count",
        "feedback_score",
        "last_accessed",
    }
)


@dataclass
class StorageStats:
    total: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    by_namespace: dict[str, int] = field(default_factory=dict)
    with_embeddings: int = 0


@dataclass
class FeedbackCounts:
    total: int = 0
    helpful: int = 0
    first_at: float | None = None
    last_at: float | None = None


@dataclass
class OverviewCounts:
    """Time-windowed counters for the analytics overview."""

    created_last_7_days: int = 0
    created_last_30_days: int = 0
    avg_confidence: float = 0.0
    total_recalled: int = 0
    accessed_last_30_days: int = 0


@dataclass
class DailyCreation:
    date: str  # YYYY-MM-DD, UTC
    created: int
    avg_confidence: float | None


class MemoryStorage(ABC):
    """Durable store for memories, contradictions and feedback votes."""

    async def initialize(self) -> None:  # noqa: B027
        """Prepare the backend (schema, connections). Idempotent."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""

    # -- memories ---------------------------------------------------------

    @abstractmethod
    async def create_memory(self, memory: Memory) -> Memory: ...

    @abstractmethod
    async def get_memory(self, memory_id: str) -> Memory | None: ...

    @abstractmethod
    async def update_memory(
        self,
        memory_id: str,
        updates: dict[str, Any],
        preserve_timestamps: bool = False,
    ) -> Memory | None:
        """Apply *updates* (keys from ``UPDATABLE_FIELDS``); None if the memory is gone."""

    @abstractmethod
    async def delete_memory(self, memory_id: str) -> bool: ...

    @abstractmethod
    async def list_memories(
        self,
        namespace: str | None = None,
        category: Category | None = None,
        limit: int = 50,
        offset: int = 0,
        sort: str = "created_at DESC",
    ) -> list[Memory]: ...

    @abstractmethod
    async def search_full_text(self, query: str, limit: int = 20, namespace: str | None = None) -> list[Memory]:
        """Full-text matches in relevance order."""

    @abstractmethod
    async def memories_with_embeddings(self, namespace: str | None = None) -> list[Memory]: ...

    @abstractmethod
    async def memories_by_entity(
        self,
        entity: str,
        namespace: str,
        limit: int = 50,
        exclude_id: str | None = None,
    ) -> list[Memory]:
        """Most recently created memories sharing *entity* within *namespace*."""

    @abstractmethod
    async def touch_access(self, memory_ids: Sequence[str], at: float | None = None) -> None:
        """Increment ``access_count`` once per distinct id and set ``last_accessed``."""

    @abstractmethod
    async def stats(self) -> StorageStats: ...

    # -- contradictions ---------------------------------------------------

    @abstractmethod
    async def create_contradiction(self, contradiction: Contradiction) -> Contradiction | None:
        """Insert *contradiction*; None if an unresolved record already covers the pair."""

    @abstractmethod
    async def contradiction_exists(self, memory1_id: str, memory2_id: str) -> bool:
        """True when an unresolved record exists for the unordered pair."""

    @abstractmethod
    async def get_contradiction(self, contradiction_id: str) -> Contradiction | None: ...

    @abstractmethod
    async def list_contradictions(
        self,
        status: ContradictionStatus | None = ContradictionStatus.UNRESOLVED,
        limit: int = 100,
    ) -> list[Contradiction]: ...

    @abstractmethod
    async def update_contradiction(self, contradiction: Contradiction) -> bool: ...

    # -- feedback ---------------------------------------------------------

    @abstractmethod
    async def record_feedback_vote(
        self,
        feedback_id: str,
        memory_id: str,
        helpful: bool,
        context: str | None,
        created_at: float,
    ) -> None: ...

    @abstractmethod
    async def feedback_counts(self, memory_id: str) -> FeedbackCounts: ...

    @abstractmethod
    async def feedback_history(self, memory_id: str, limit: int = 10) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def low_feedback_memories(self, threshold: float, min_feedback: int) -> list[tuple[Memory, int]]: ...

    # -- reporting --------------------------------------------------------

    @abstractmethod
    async def overview_counts(self, now: float) -> OverviewCounts: ...

    @abstractmethod
    async def stale_candidates(self, before: float, limit: int, offset: int = 0) -> tuple[list[Memory], int]:
        """Memories whose last activity predates *before*, oldest first, plus total count."""

    @abstractmethod
    async def never_recalled(self, limit: int, offset: int = 0) -> tuple[list[Memory], int]:
        """Memories with ``access_count = 0``, oldest first, plus total count."""

    @abstractmethod
    async def daily_creation(self, since: float) -> list[DailyCreation]: ...
