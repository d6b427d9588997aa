"""
Hybrid recall: embedding similarity + full-text matches + recency/confidence/access.

Candidates are the union of the top full-text matches for the query and every
embedded memory in the namespace; each is scored with the five-signal linear
combination in :mod:`engram_memory.utils.scoring`. When the query cannot be
embedded the service degrades to a full-text-only ranking instead of failing.
"""

import logging
import time
from collections.abc import Callable

from ..config import RecallSettings
from ..errors import StorageError
from ..models.inputs import RecallParams
from ..models.memory import Memory, RankedMemory, ScoreBreakdown
from ..models.validators import Category
from ..storage.base import MemoryStorage
from ..utils.embeddings import EmbeddingProvider
from ..utils.scoring import access_score, fts_rank_score, recency_score, score_memory

logger = logging.getLogger(__name__)


class RecallService:
    """Scoring engine over a record store and an injected embedding provider."""

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: EmbeddingProvider,
        config: RecallSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.embedder = embedder
        self.config = config or RecallSettings()
        self._clock = clock

    async def recall(
        self,
        query: str,
        limit: int | None = None,
        category: Category | str | None = None,
        namespace: str | None = None,
        threshold: float | None = None,
    ) -> list[RankedMemory]:
        """
        Rank memories for *query*.

        Args:
            query: Free-text query
            limit: Maximum results (0 returns nothing and records no access)
            category: Only return memories of this category
            namespace: Namespace to search (defaults to the configured one)
            threshold: Minimum final score

        Returns:
            Results sorted by score descending. Returned memories have their
            access stats bumped exactly once.

        Raises:
            pydantic.ValidationError: On malformed arguments
        """
        params = RecallParams(query=query, limit=limit, category=category, namespace=namespace, threshold=threshold)
        limit = self.config.limit if params.limit is None else params.limit
        threshold = self.config.threshold if params.threshold is None else params.threshold
        namespace = params.namespace or self.config.default_namespace

        if limit == 0:
            return []

        try:
            query_embedding = await self.embedder.embed(params.query)
        except Exception as e:
            logger.warning(f"Failed to embed recall query, falling back to full-text search: {e}")
            return await self._recall_full_text(params.query, limit, params.category, namespace)

        now = self._clock()
        candidates = await self._gather_candidates(params.query, namespace)

        ranked: list[RankedMemory] = []
        for memory, from_fts in candidates.values():
            if params.category is not None and memory.category != params.category:
                continue
            breakdown = score_memory(memory, query_embedding, from_fts, now, self.config)
            if breakdown.final < threshold:
                continue
            ranked.append(RankedMemory(memory=memory, score=breakdown.final, score_breakdown=breakdown))

        # Ties broken by id so identical state always yields identical order
        ranked.sort(key=lambda r: (-r.score, r.memory.id))
        results = ranked[:limit]

        await self.storage.touch_access([r.memory.id for r in results], at=now)
        logger.info(
            f"Recall complete: {len(results)} of {len(candidates)} candidates returned "
            f"(namespace='{namespace}', threshold={threshold})"
        )
        return results

    async def _gather_candidates(self, query: str, namespace: str) -> dict[str, tuple[Memory, bool]]:
        """Union of full-text matches and embedded memories, keyed by id, with an FTS flag."""
        candidates: dict[str, tuple[Memory, bool]] = {}

        try:
            fts_matches = await self.storage.search_full_text(
                query, limit=self.config.fts_candidates, namespace=namespace
            )
        except StorageError as e:
            logger.warning(f"Full-text candidate search failed, using embeddings only: {e}")
            fts_matches = []
        for memory in fts_matches:
            candidates[memory.id] = (memory, True)

        for memory in await self.storage.memories_with_embeddings(namespace):
            if memory.id not in candidates:
                candidates[memory.id] = (memory, False)

        logger.debug(f"Recall candidates: {len(fts_matches)} full-text, {len(candidates)} total")
        return candidates

    async def _recall_full_text(
        self,
        query: str,
        limit: int,
        category: Category | None,
        namespace: str,
    ) -> list[RankedMemory]:
        """Position-ranked full-text results used when the query cannot be embedded."""
        now = self._clock()
        matches = await self.storage.search_full_text(query, limit=limit * 2, namespace=namespace)
        if category is not None:
            matches = [m for m in matches if m.category == category]
        matches = matches[:limit]

        results = []
        for index, memory in enumerate(matches):
            score = fts_rank_score(index)
            breakdown = ScoreBreakdown(
                similarity=0.0,
                recency=recency_score(memory, now),
                confidence=memory.confidence,
                access=access_score(memory.access_count),
                fts_boost=score,
                final=score,
            )
            results.append(RankedMemory(memory=memory, score=score, score_breakdown=breakdown))

        await self.storage.touch_access([m.id for m in matches], at=now)
        logger.info(f"Full-text fallback recall complete: {len(results)} returned")
        return results


def format_recall_results(results: list[RankedMemory]) -> str:
    """Human-readable numbered listing of recall results."""
    if not results:
        return "No relevant memories found."

    noun = "memory" if len(results) == 1 else "memories"
    lines = [f"Found {len(results)} relevant {noun}:", ""]
    for number, result in enumerate(results, start=1):
        memory = result.memory
        lines.append(
            f"[{number}] ({memory.category.value}, confidence: {memory.confidence:.2f}, "
            f"id: {memory.id[:8]}) (score: {result.score:.3f})"
        )
        lines.append(memory.content)
        lines.append("")
    return "\n".join(lines)
