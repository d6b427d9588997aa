"""
Read-only analytics over the record store.

Nothing here mutates state: duplicate clustering reuses the similarity graph
from consolidation but only reports clusters, and recall access stats are
left untouched.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from ..config import AnalyticsSettings
from ..models.memory import SECONDS_PER_DAY, Memory
from ..models.responses import (
    ClusterMember,
    DuplicateCluster,
    DuplicateReport,
    NeverRecalledItem,
    NeverRecalledPage,
    Overview,
    StaleMemoriesPage,
    StaleMemoryItem,
    TrendPoint,
    Trends,
)
from ..storage.base import MemoryStorage
from ..utils.similarity_graph import PairFinder, brute_force_pairs, cluster_pairs

logger = logging.getLogger(__name__)


def _whole_days(seconds: float) -> int:
    return max(0, int(seconds // SECONDS_PER_DAY))


class AnalyticsService:
    """Overview, listings, duplicate report and trends."""

    def __init__(
        self,
        storage: MemoryStorage,
        config: AnalyticsSettings | None = None,
        clock: Callable[[], float] = time.time,
        pair_finder: PairFinder = brute_force_pairs,
    ):
        self.storage = storage
        self.config = config or AnalyticsSettings()
        self._clock = clock
        self._pair_finder = pair_finder

    async def get_overview(self) -> Overview:
        """Totals, per-category/namespace breakdowns and recall/freshness counters."""
        now = self._clock()
        stats = await self.storage.stats()
        counts = await self.storage.overview_counts(now)

        recall_rate = round(counts.total_recalled / stats.total * 100) if stats.total > 0 else 0
        return Overview(
            total_memories=stats.total,
            by_category=stats.by_category,
            by_namespace=stats.by_namespace,
            with_embeddings=stats.with_embeddings,
            created_last_7_days=counts.created_last_7_days,
            created_last_30_days=counts.created_last_30_days,
            avg_confidence=round(counts.avg_confidence, 2),
            total_recalled=counts.total_recalled,
            accessed_last_30_days=counts.accessed_last_30_days,
            recall_rate=recall_rate,
        )

    async def get_stale_memories(
        self,
        days: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> StaleMemoriesPage:
        """
        Memories whose last activity is older than *days*, oldest first.

        Last activity is ``last_accessed``, or ``created_at`` for memories
        that were never recalled.
        """
        days = self.config.stale_days if days is None else days
        limit = self.config.page_size if limit is None else limit
        if days < 0 or limit < 0 or offset < 0:
            raise ValueError("days, limit and offset must be non-negative")

        now = self._clock()
        memories, count = await self.storage.stale_candidates(now - days * SECONDS_PER_DAY, limit, offset)
        items = [
            StaleMemoryItem(
                id=m.id,
                content=m.content,
                category=m.category,
                entity=m.entity,
                confidence=m.confidence,
                last_accessed=m.last_accessed,
                access_count=m.access_count,
                days_since_access=_whole_days(now - m.last_activity()),
            )
            for m in memories
        ]
        return StaleMemoriesPage(items=items, count=count)

    async def get_never_recalled(self, limit: int | None = None, offset: int = 0) -> NeverRecalledPage:
        """Memories with zero recalls, oldest first."""
        limit = self.config.page_size if limit is None else limit
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")

        now = self._clock()
        memories, count = await self.storage.never_recalled(limit, offset)
        items = [
            NeverRecalledItem(
                id=m.id,
                content=m.content,
                category=m.category,
                entity=m.entity,
                confidence=m.confidence,
                created_at=m.created_at,
                days_since_creation=_whole_days(now - m.created_at),
            )
            for m in memories
        ]
        return NeverRecalledPage(items=items, count=count)

    async def get_duplicate_clusters(self, threshold: float | None = None) -> DuplicateReport:
        """
        Report groups of near-duplicate memories without deleting anything.

        Args:
            threshold: Similarity a pair must exceed to be linked (default 0.85)

        Returns:
            Clusters with their weakest internal similarity, plus how many
            memories would disappear if every cluster collapsed to one
        """
        threshold = self.config.cluster_threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")

        memories = await self.storage.memories_with_embeddings()
        by_id: dict[str, Memory] = {m.id: m for m in memories}
        groups = cluster_pairs(self._pair_finder(memories, threshold))

        clusters = [
            DuplicateCluster(
                namespace=group.namespace,
                memories=[
                    ClusterMember(
                        id=by_id[mid].id,
                        content=by_id[mid].content,
                        category=by_id[mid].category,
                        confidence=by_id[mid].confidence,
                        access_count=by_id[mid].access_count,
                    )
                    for mid in group.member_ids
                ],
                similarity=round(group.min_similarity, 2),
            )
            for group in groups
        ]
        total_duplicates = sum(c.size - 1 for c in clusters)
        logger.info(f"Duplicate report: {len(clusters)} clusters, {total_duplicates} redundant memories")
        return DuplicateReport(clusters=clusters, total_duplicates=total_duplicates)

    async def get_trends(self, days: int | None = None) -> Trends:
        """Daily creation counts for the last *days* days, zero-filled, oldest first (UTC dates)."""
        days = self.config.trend_days if days is None else days
        if days < 1:
            raise ValueError("days must be at least 1")

        now = self._clock()
        start = now - days * SECONDS_PER_DAY
        rows = {row.date: row for row in await self.storage.daily_creation(start)}

        daily: list[TrendPoint] = []
        current = datetime.fromtimestamp(start, timezone.utc).date()
        end = datetime.fromtimestamp(now, timezone.utc).date()
        while current <= end:
            key = current.isoformat()
            row = rows.get(key)
            daily.append(
                TrendPoint(
                    date=key,
                    created=row.created if row else 0,
                    avg_confidence=round(row.avg_confidence, 2)
                    if row and row.avg_confidence is not None
                    else None,
                )
            )
            current += timedelta(days=1)
        return Trends(daily=daily)
