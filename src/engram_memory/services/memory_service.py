"""
Memory Service - single entry point for memory operations.

Wires one record store and one injected embedding provider to the recall,
consolidation, analytics, feedback and context engines so every transport
(CLI, REST, MCP) calls the same business logic. The service itself owns the
write path for new memories: validation, embedding, insert-time dedup and the
proactive contradiction check.
"""

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from ..config import Settings
from ..config import settings as default_settings
from ..errors import MemoryNotFoundError
from ..models.contradiction import ConflictView, Contradiction
from ..models.inputs import StoreMemoryParams
from ..models.memory import Memory, RankedMemory
from ..models.responses import (
    ConsolidationResult,
    ContextResult,
    DuplicateReport,
    FeedbackEntry,
    FeedbackResult,
    FeedbackStats,
    HealthReport,
    NeverRecalledPage,
    Overview,
    StaleMemoriesPage,
    StoreResult,
    Trends,
)
from ..models.validators import Category, ResolutionAction
from ..storage.base import MemoryStorage
from ..utils.embeddings import EmbeddingProvider
from ..utils.extract_rules import calculate_confidence, detect_category, extract_entity
from ..utils.health import calculate_health_score
from ..utils.similarity_graph import CancellationToken
from .analytics_service import AnalyticsService
from .consolidation_service import ConsolidationService
from .context_service import ContextService
from .feedback_service import FeedbackService
from .recall_service import RecallService

logger = logging.getLogger(__name__)


def merge_content(existing: str, incoming: str) -> str:
    """Longer incoming text replaces the existing text; otherwise append it."""
    if len(incoming) > len(existing):
        return incoming
    return f"{existing} {incoming}".strip()


class MemoryService:
    """
    Shared service for memory operations with consistent business logic.

    Args:
        storage: Initialized record store
        embedder: Embedding provider owned by the caller
        settings: Configuration (defaults to the environment-driven settings)
        clock: Time source, injectable for deterministic tests
    """

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: EmbeddingProvider,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.embedder = embedder
        self.settings = settings or default_settings
        self._clock = clock

        self.recall_engine = RecallService(storage, embedder, self.settings.recall, clock)
        self.consolidation = ConsolidationService(storage, self.settings.consolidation, clock)
        self.analytics = AnalyticsService(storage, self.settings.analytics, clock)
        self.feedback = FeedbackService(storage, self.settings.feedback, clock)
        self.context = ContextService(storage, embedder, self.settings.recall.default_namespace, clock)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        content: str,
        entity: str | None = None,
        category: Category | str | None = None,
        confidence: float | None = None,
        namespace: str | None = None,
        tags: Sequence[str] | str | None = None,
        source: str = "manual",
        decay_rate: float | None = None,
        force: bool = False,
    ) -> StoreResult:
        """
        Store a new memory with validation and insert-time deduplication.

        If the embedding is within the reject threshold of an existing
        same-namespace memory the insert is refused (``duplicate``); within
        the merge threshold the new text is folded into the existing memory
        (``merged``). ``force=True`` skips both checks. A memory whose
        content cannot be embedded is still stored, without an embedding.

        A missing entity, category or confidence is filled in from the
        content by the extraction heuristics.

        Raises:
            pydantic.ValidationError: On malformed input, before any write
        """
        params = StoreMemoryParams(
            content=content,
            entity=entity,
            category=category,
            confidence=confidence,
            namespace=namespace,
            tags=tags,
            source=source,
            decay_rate=decay_rate,
            force=force,
        )
        params = self._fill_missing_metadata(params)
        ingest = self.settings.ingest
        namespace = params.namespace or self.settings.recall.default_namespace

        embedding: list[float] | None = None
        try:
            embedding = await self.embedder.embed(params.content)
        except Exception as e:
            logger.warning(f"Failed to embed new memory, storing without embedding: {e}")

        if embedding is not None and not params.force:
            match = await self._closest_match(embedding, namespace)
            if match is not None:
                existing, similarity = match
                if similarity >= ingest.reject_threshold:
                    logger.info(f"Duplicate memory rejected: matches {existing.id[:8]} (similarity {similarity:.3f})")
                    return StoreResult(
                        status="duplicate",
                        id=existing.id,
                        message=f"Similar memory already exists: {existing.id[:8]}",
                        similarity=similarity,
                        existing_content=existing.content,
                    )
                if similarity >= ingest.merge_threshold:
                    return await self._merge_into(existing, params, embedding, similarity)

        now = self._clock()
        memory = Memory(
            content=params.content,
            entity=params.entity,
            category=params.category,
            confidence=params.confidence,
            embedding=embedding,
            namespace=namespace,
            tags=params.tags,
            source=params.source,
            decay_rate=ingest.default_decay_rate if params.decay_rate is None else params.decay_rate,
            created_at=now,
            updated_at=now,
        )
        await self.storage.create_memory(memory)
        logger.info(f"Stored memory {memory.id[:8]} ({memory.category.value}, namespace '{namespace}')")

        contradictions = await self.consolidation.check_new_memory(memory)
        return StoreResult(
            status="created",
            id=memory.id,
            message="Memory stored successfully",
            memory=memory,
            contradictions=contradictions,
        )

    def _fill_missing_metadata(self, params: StoreMemoryParams) -> StoreMemoryParams:
        updates: dict[str, Any] = {}
        if params.entity is None:
            updates["entity"] = extract_entity(params.content)
        if params.category is None:
            updates["category"] = detect_category(params.content)
        if params.confidence is None:
            updates["confidence"] = calculate_confidence(params.content, self.settings.ingest.default_confidence)
        if updates.get("entity"):
            logger.debug(f"Extracted entity '{updates['entity']}' from new memory content")
        return params.model_copy(update=updates)

    async def _closest_match(self, embedding: list[float], namespace: str) -> tuple[Memory, float] | None:
        """Most similar same-namespace memory at or above the merge threshold."""
        best: tuple[Memory, float] | None = None
        for memory in await self.storage.memories_with_embeddings(namespace):
            try:
                similarity = self.embedder.cosine_similarity(embedding, memory.embedding)
            except ValueError:
                continue
            if similarity < self.settings.ingest.merge_threshold:
                continue
            if best is None or similarity > best[1]:
                best = (memory, similarity)
        return best

    async def _merge_into(
        self,
        existing: Memory,
        params: StoreMemoryParams,
        embedding: list[float],
        similarity: float,
    ) -> StoreResult:
        updated = await self.storage.update_memory(
            existing.id,
            {
                "content": merge_content(existing.content, params.content),
                "tags": existing.tags | params.tags,
                "confidence": max(existing.confidence, params.confidence),
                "embedding": embedding,
            },
        )
        if updated is None:
            raise MemoryNotFoundError(existing.id)

        logger.info(f"Similar memory merged into {existing.id[:8]} (similarity {similarity:.3f})")
        return StoreResult(
            status="merged",
            id=existing.id,
            message=f"Memory merged with existing: {existing.id[:8]}",
            similarity=similarity,
            memory=updated,
        )

    async def get_memory(self, memory_id: str) -> Memory:
        memory = await self.storage.get_memory(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        return memory

    async def delete_memory(self, memory_id: str) -> bool:
        return await self.storage.delete_memory(memory_id)

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    async def recall(
        self,
        query: str,
        limit: int | None = None,
        category: Category | str | None = None,
        namespace: str | None = None,
        threshold: float | None = None,
    ) -> list[RankedMemory]:
        return await self.recall_engine.recall(
            query, limit=limit, category=category, namespace=namespace, threshold=threshold
        )

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate(
        self,
        detect_duplicates: bool = True,
        detect_contradictions: bool = True,
        apply_decay: bool = True,
        cleanup_stale: bool = False,
        duplicate_threshold: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ConsolidationResult:
        return await self.consolidation.consolidate(
            detect_duplicates=detect_duplicates,
            detect_contradictions=detect_contradictions,
            apply_decay=apply_decay,
            cleanup_stale=cleanup_stale,
            duplicate_threshold=duplicate_threshold,
            cancel_token=cancel_token,
        )

    async def get_conflicts(self, limit: int = 100) -> list[ConflictView]:
        return await self.consolidation.get_conflicts(limit=limit)

    async def resolve_contradiction(self, contradiction_id: str, action: ResolutionAction | str) -> Contradiction:
        return await self.consolidation.resolve_contradiction(contradiction_id, action)

    # ------------------------------------------------------------------
    # Analytics and health
    # ------------------------------------------------------------------

    async def get_overview(self) -> Overview:
        return await self.analytics.get_overview()

    async def get_stale_memories(
        self, days: int | None = None, limit: int | None = None, offset: int = 0
    ) -> StaleMemoriesPage:
        return await self.analytics.get_stale_memories(days=days, limit=limit, offset=offset)

    async def get_never_recalled(self, limit: int | None = None, offset: int = 0) -> NeverRecalledPage:
        return await self.analytics.get_never_recalled(limit=limit, offset=offset)

    async def get_duplicate_clusters(self, threshold: float | None = None) -> DuplicateReport:
        return await self.analytics.get_duplicate_clusters(threshold=threshold)

    async def get_trends(self, days: int | None = None) -> Trends:
        return await self.analytics.get_trends(days=days)

    @staticmethod
    def health_score(overview: Overview, duplicate_count: int = 0, trends: Trends | None = None) -> int:
        return calculate_health_score(overview, duplicate_count, trends)

    async def health_report(self) -> HealthReport:
        """Gather overview, duplicate report and trends, then score them."""
        overview = await self.analytics.get_overview()
        duplicates = await self.analytics.get_duplicate_clusters()
        trends = await self.analytics.get_trends()
        score = calculate_health_score(overview, duplicates.total_duplicates, trends)
        logger.info(f"Memory health score: {score}")
        return HealthReport(
            score=score,
            overview=overview,
            duplicate_count=duplicates.total_duplicates,
            trends=trends,
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def record_feedback(self, memory_id: str, helpful: bool, context: str | None = None) -> FeedbackResult:
        return await self.feedback.record_feedback(memory_id, helpful, context)

    async def get_feedback_history(self, memory_id: str, limit: int = 10) -> list[FeedbackEntry]:
        return await self.feedback.get_feedback_history(memory_id, limit=limit)

    async def get_feedback_stats(self, memory_id: str) -> FeedbackStats:
        return await self.feedback.get_feedback_stats(memory_id)

    async def get_low_feedback_memories(
        self, threshold: float = -0.3, min_feedback: int = 3
    ) -> list[tuple[Memory, int]]:
        return await self.feedback.get_low_feedback_memories(threshold, min_feedback)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def generate_context(self, **options: Any) -> ContextResult:
        """See :meth:`ContextService.generate_context` for the accepted options."""
        return await self.context.generate_context(**options)
