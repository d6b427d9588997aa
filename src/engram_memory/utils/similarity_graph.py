"""
Similarity graph construction and Union-Find clustering.

Finds near-duplicate memory pairs by embedding cosine similarity and groups
them into transitive clusters. Both the destructive dedup merge and the
read-only duplicate report start here, with different thresholds and
different terminal actions.

Design rationale:
    Pair finding is a brute-force O(n²) scan per namespace, which is fine at
    the low-thousands scale a namespace is expected to hold. It sits behind
    the :class:`PairFinder` protocol so a blocking or ANN index can replace
    it without touching merge or reporting code.

    Union-Find groups transitive duplicates correctly: if A≈B and B≈C, all
    three land in the same cluster rather than two overlapping pairs.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ..errors import ConsolidationCancelledError
from ..models.memory import Memory
from .embeddings import cosine_similarity

SimilarityFn = Callable[[Sequence[float], Sequence[float]], float]

# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Cooperative cancellation flag checked inside long pairwise loops."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ConsolidationCancelledError("pairwise sweep cancelled")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SimilarPair:
    """Two same-namespace memories whose embeddings exceed a threshold."""

    id_a: str
    id_b: str
    namespace: str
    similarity: float


@dataclass
class SimilarityCluster:
    """A connected component of the similarity graph."""

    namespace: str
    member_ids: list[str]
    # Weakest edge inside the component
    min_similarity: float
    pairs: list[SimilarPair] = field(default_factory=list)


class PairFinder(Protocol):
    def __call__(
        self,
        memories: Sequence[Memory],
        threshold: float,
        *,
        similarity: SimilarityFn = ...,
        cancel: CancellationToken | None = None,
    ) -> list[SimilarPair]: ...


# ---------------------------------------------------------------------------
# Pair finding
# ---------------------------------------------------------------------------


def partition_by_namespace(memories: Iterable[Memory]) -> dict[str, list[Memory]]:
    """Group memories by namespace, preserving input order within each group."""
    groups: dict[str, list[Memory]] = defaultdict(list)
    for memory in memories:
        groups[memory.namespace].append(memory)
    return dict(groups)


def brute_force_pairs(
    memories: Sequence[Memory],
    threshold: float,
    *,
    similarity: SimilarityFn = cosine_similarity,
    cancel: CancellationToken | None = None,
) -> list[SimilarPair]:
    """
    Compare every same-namespace pair of embedded memories.

    Memories without an embedding are ignored. A pair is reported only when
    its similarity is strictly greater than *threshold*.

    Args:
        memories: Candidate memories, any namespaces mixed
        threshold: Similarity a pair must exceed
        similarity: Vector similarity function
        cancel: Optional token checked once per outer-loop row

    Returns:
        Pairs in scan order (namespace, then i < j input order)

    Raises:
        ConsolidationCancelledError: If *cancel* fires mid-scan
    """
    pairs: list[SimilarPair] = []
    embedded = [m for m in memories if m.has_embedding]

    for namespace, group in partition_by_namespace(embedded).items():
        n = len(group)
        for i in range(n):
            if cancel is not None:
                cancel.raise_if_cancelled()
            mem_a = group[i]
            for j in range(i + 1, n):
                mem_b = group[j]
                if mem_a.id == mem_b.id:
                    continue
                try:
                    sim = similarity(mem_a.embedding, mem_b.embedding)
                except ValueError:
                    # Dimension mismatch after a model change: not comparable
                    continue
                if sim > threshold:
                    pairs.append(SimilarPair(mem_a.id, mem_b.id, namespace, sim))

    return pairs


# ---------------------------------------------------------------------------
# Union-Find for transitive closure grouping
# ---------------------------------------------------------------------------


class _UnionFind:
    """Path-compressed Union-Find for grouping duplicate clusters."""

    def __init__(self) -> None:
        self._parent: dict[str, str] = {}
        self._rank: dict[str, int] = {}

    def find(self, x: str) -> str:
        if x not in self._parent:
            self._parent[x] = x
            self._rank[x] = 0
        if self._parent[x] != x:
            self._parent[x] = self.find(self._parent[x])  # path compression
        return self._parent[x]

    def union(self, x: str, y: str) -> None:
        rx, ry = self.find(x), self.find(y)
        if rx == ry:
            return
        # Union by rank
        if self._rank[rx] < self._rank[ry]:
            rx, ry = ry, rx
        self._parent[ry] = rx
        if self._rank[rx] == self._rank[ry]:
            self._rank[rx] += 1


def cluster_pairs(pairs: Sequence[SimilarPair]) -> list[SimilarityCluster]:
    """
    Group similar pairs into transitive clusters.

    Each cluster reports the minimum similarity over the edges that formed
    it. Pairs never cross namespaces, so neither do clusters.

    Returns:
        Clusters with ≥2 members, largest first, ties by weakest link descending
    """
    uf = _UnionFind()
    for pair in pairs:
        uf.union(pair.id_a, pair.id_b)

    members: dict[str, list[str]] = defaultdict(list)
    seen: set[str] = set()
    for pair in pairs:
        for memory_id in (pair.id_a, pair.id_b):
            if memory_id not in seen:
                seen.add(memory_id)
                members[uf.find(memory_id)].append(memory_id)

    edges: dict[str, list[SimilarPair]] = defaultdict(list)
    for pair in pairs:
        edges[uf.find(pair.id_a)].append(pair)

    clusters = [
        SimilarityCluster(
            namespace=edges[root][0].namespace,
            member_ids=ids,
            min_similarity=min(p.similarity for p in edges[root]),
            pairs=edges[root],
        )
        for root, ids in members.items()
        if len(ids) >= 2
    ]
    clusters.sort(key=lambda c: (-len(c.member_ids), -c.min_similarity))
    return clusters
