"""
Composite memory health score (0–100).

Folds analytics output into one number. Factors and weights (sum to 1.0):

    recall rate   fraction of memories recalled at least once       0.25
    freshness     fraction accessed in the last 30 days             0.20
    confidence    average confidence                                0.20
    diversity     normalized Shannon entropy over the 5 categories  0.15
    growth        recent vs prior creation rate                     0.10
    cleanliness   1 - 5 * duplicate ratio (20% duplicates → 0)      0.10
"""

from __future__ import annotations

import math
from collections.abc import Mapping

from ..models.responses import Overview, Trends
from ..models.validators import Category

RECALL_WEIGHT = 0.25
FRESHNESS_WEIGHT = 0.20
CONFIDENCE_WEIGHT = 0.20
DIVERSITY_WEIGHT = 0.15
GROWTH_WEIGHT = 0.10
CLEANLINESS_WEIGHT = 0.10

# Growth score when nothing was created in either comparison window
_IDLE_GROWTH = 0.3


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def category_diversity(by_category: Mapping[str, int]) -> float:
    """Shannon entropy of the category distribution divided by log2(5)."""
    counts = [c for c in by_category.values() if c > 0]
    total = sum(counts)
    if total == 0 or len(counts) <= 1:
        return 0.0

    entropy = 0.0
    for count in counts:
        p = count / total
        entropy -= p * math.log2(p)
    return _clamp01(entropy / math.log2(len(Category)))


def growth_score(overview: Overview, trends: Trends | None) -> float:
    """
    Week-over-week creation growth, halved so a 2x increase saturates at 1.0.

    Needs 14 days of trend history; otherwise falls back to the 7-day rate
    vs the 30-day rate from the overview.
    """
    if trends is not None and len(trends.daily) >= 14:
        daily = trends.daily
        recent_week = sum(d.created for d in daily[-7:])
        prior_week = sum(d.created for d in daily[-14:-7])
        if prior_week == 0:
            return 1.0 if recent_week > 0 else _IDLE_GROWTH
        return _clamp01((recent_week / prior_week) / 2)

    if overview.created_last_30_days == 0:
        return 0.0
    weekly_rate = overview.created_last_7_days / 7
    monthly_rate = overview.created_last_30_days / 30
    return _clamp01((weekly_rate / monthly_rate) / 2)


def calculate_health_score(
    overview: Overview,
    duplicate_count: int = 0,
    trends: Trends | None = None,
) -> int:
    """
    Weighted 0–100 health score; exactly 0 for an empty store.

    Args:
        overview: Store-wide totals from the analytics engine
        duplicate_count: ``DuplicateReport.total_duplicates``
        trends: Daily creation series (optional)

    Returns:
        Integer score clamped to [0, 100]
    """
    total = overview.total_memories
    if total <= 0:
        return 0

    recall_rate = _clamp01(overview.total_recalled / total)
    freshness = _clamp01(overview.accessed_last_30_days / total)
    confidence = _clamp01(overview.avg_confidence)
    diversity = category_diversity(overview.by_category)
    growth = growth_score(overview, trends)
    cleanliness = max(0.0, 1.0 - 5.0 * max(0, duplicate_count) / total)

    weighted = (
        recall_rate * RECALL_WEIGHT
        + freshness * FRESHNESS_WEIGHT
        + confidence * CONFIDENCE_WEIGHT
        + diversity * DIVERSITY_WEIGHT
        + growth * GROWTH_WEIGHT
        + cleanliness * CLEANLINESS_WEIGHT
    )
    return int(round(_clamp01(weighted) * 100))
