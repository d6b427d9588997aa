"""Helpful/unhelpful votes and the confidence nudges they drive."""

import logging
import time
from collections.abc import Callable

from ..config import FeedbackSettings
from ..errors import MemoryNotFoundError
from ..models.inputs import FeedbackParams
from ..models.memory import Memory, generate_id
from ..models.responses import FeedbackEntry, FeedbackResult, FeedbackStats
from ..storage.base import MemoryStorage

logger = logging.getLogger(__name__)


def feedback_score(helpful_count: int, total_count: int) -> float:
    """``(2 * helpful - total) / total``: -1.0 all unhelpful, +1.0 all helpful."""
    if total_count <= 0:
        return 0.0
    return (2 * helpful_count - total_count) / total_count


def adjusted_confidence(confidence: float, score: float, total_count: int, config: FeedbackSettings) -> float:
    """
    Confidence after feedback, or the unchanged value.

    Only kicks in once ``config.min_votes`` votes exist: a score below -0.5
    costs ``penalty`` (floored), above 0.5 earns ``reward`` (capped at 1.0).
    """
    if total_count < config.min_votes:
        return confidence
    if score < -0.5:
        return max(config.floor, confidence - config.penalty)
    if score > 0.5:
        return min(1.0, confidence + config.reward)
    return confidence


class FeedbackService:
    def __init__(
        self,
        storage: MemoryStorage,
        config: FeedbackSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.config = config or FeedbackSettings()
        self._clock = clock

    async def record_feedback(self, memory_id: str, helpful: bool, context: str | None = None) -> FeedbackResult:
        """
        Record one vote and recompute the memory's feedback score.

        Raises:
            MemoryNotFoundError: If the memory does not exist
        """
        params = FeedbackParams(memory_id=memory_id, helpful=helpful, context=context)
        memory = await self.storage.get_memory(params.memory_id)
        if memory is None:
            raise MemoryNotFoundError(params.memory_id)

        feedback_id = generate_id()
        await self.storage.record_feedback_vote(
            feedback_id, memory.id, params.helpful, params.context, created_at=self._clock()
        )

        counts = await self.storage.feedback_counts(memory.id)
        score = feedback_score(counts.helpful, counts.total)
        new_confidence = adjusted_confidence(memory.confidence, score, counts.total, self.config)

        updates: dict[str, float] = {"feedback_score": score}
        adjusted = new_confidence != memory.confidence
        if adjusted:
            updates["confidence"] = new_confidence
            logger.info(
                f"Confidence of {memory.id[:8]} adjusted {memory.confidence:.2f} -> {new_confidence:.2f} "
                f"(feedback score {score:.2f} over {counts.total} votes)"
            )
        await self.storage.update_memory(memory.id, updates, preserve_timestamps=True)

        logger.debug(f"Feedback recorded for {memory.id[:8]}: helpful={params.helpful}, score={score:.2f}")
        return FeedbackResult(
            feedback_id=feedback_id,
            memory_id=memory.id,
            feedback_score=score,
            feedback_count=counts.total,
            helpful_count=counts.helpful,
            unhelpful_count=counts.total - counts.helpful,
            confidence_adjusted=adjusted,
            new_confidence=new_confidence,
        )

    async def get_feedback_history(self, memory_id: str, limit: int = 10) -> list[FeedbackEntry]:
        """Most recent votes first."""
        rows = await self.storage.feedback_history(memory_id, limit=limit)
        return [FeedbackEntry(**row) for row in rows]

    async def get_feedback_stats(self, memory_id: str) -> FeedbackStats:
        memory = await self.storage.get_memory(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)

        counts = await self.storage.feedback_counts(memory_id)
        return FeedbackStats(
            total_feedback=counts.total,
            helpful_count=counts.helpful,
            unhelpful_count=counts.total - counts.helpful,
            feedback_score=memory.feedback_score,
            confidence=memory.confidence,
            first_feedback_at=counts.first_at,
            last_feedback_at=counts.last_at,
        )

    async def get_low_feedback_memories(
        self,
        threshold: float = -0.3,
        min_feedback: int = 3,
    ) -> list[tuple[Memory, int]]:
        """Memories scoring at or below *threshold* with at least *min_feedback* votes, worst first."""
        return await self.storage.low_feedback_memories(threshold, min_feedback)
