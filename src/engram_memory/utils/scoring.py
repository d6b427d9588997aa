"""
Recall scoring signals.

Each memory candidate is scored on five signals combined linearly:

    final = w_sim * similarity + w_rec * recency + w_conf * confidence
            + w_acc * access + fts_boost

All functions are pure so ranking is reproducible for identical inputs and
an identical clock value.
"""

from __future__ import annotations

from collections.abc import Sequence

from ..config import RecallSettings
from ..models.memory import Memory, ScoreBreakdown
from .embeddings import cosine_similarity

ACCESS_SATURATION = 10


def recency_score(memory: Memory, now: float) -> float:
    """
    ``1 / (1 + days_since_last_access * decay_rate)`` clamped to [0, 1].

    Uses ``last_accessed`` or, for never-recalled memories, ``created_at``.
    A decay rate of 0 keeps recency at 1.0 forever.
    """
    days = memory.days_since_access(now)
    score = 1.0 / (1.0 + days * memory.decay_rate)
    return max(0.0, min(1.0, score))


def access_score(access_count: int) -> float:
    """Saturating recall-frequency signal: 10 recalls or more scores 1.0."""
    return min(access_count / ACCESS_SATURATION, 1.0)


def score_memory(
    memory: Memory,
    query_embedding: Sequence[float] | None,
    from_fts: bool,
    now: float,
    config: RecallSettings,
) -> ScoreBreakdown:
    """Compute the five-signal breakdown for one candidate."""
    similarity = 0.0
    if query_embedding is not None and memory.has_embedding:
        try:
            similarity = cosine_similarity(query_embedding, memory.embedding)
        except ValueError:
            # Stored with a different model dimension: treat as unrelated
            similarity = 0.0

    recency = recency_score(memory, now)
    confidence = memory.confidence
    access = access_score(memory.access_count)
    fts_boost = config.fts_boost if from_fts else 0.0

    final = (
        config.similarity_weight * similarity
        + config.recency_weight * recency
        + config.confidence_weight * confidence
        + config.access_weight * access
        + fts_boost
    )
    return ScoreBreakdown(
        similarity=similarity,
        recency=recency,
        confidence=confidence,
        access=access,
        fts_boost=fts_boost,
        final=final,
    )


def fts_rank_score(rank_index: int) -> float:
    """Position-based score for the full-text-only fallback."""
    return 1.0 - 0.1 * rank_index
