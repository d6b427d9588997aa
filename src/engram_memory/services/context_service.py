"""
Context generation: render the most relevant memories as a prompt-ready block.

With a query, memories are ranked by a relevance blend of similarity,
confidence, access, recency and feedback; without one (or when the query
cannot be embedded) the most-used memories are ranked with similarity 0.
The selection is grouped by category, trimmed to a token budget, and
rendered as markdown, XML, JSON or plain text.
"""

import json
import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from xml.sax.saxutils import escape, quoteattr

from ..models.inputs import ContextParams
from ..models.memory import DEFAULT_NAMESPACE, Memory, float_to_iso
from ..models.responses import ContextResult
from ..models.validators import CATEGORY_ORDER, Category
from ..storage.base import MemoryStorage
from ..utils.embeddings import EmbeddingProvider, cosine_similarity
from ..utils.scoring import access_score

logger = logging.getLogger(__name__)

MAX_CONTEXT_MEMORIES = 25
# Memories voted down this far are never injected into context
MIN_FEEDBACK_SCORE = -0.3
# Top-memories pool when there is no query to rank against
TOP_MEMORY_POOL = 100

CHARS_PER_TOKEN = 4
RESERVED_TOKENS = 100
PER_MEMORY_TOKENS = 20

# Context recency uses a fixed decay rate, independent of per-memory settings
_CONTEXT_DECAY_RATE = 0.01


@dataclass
class _Candidate:
    memory: Memory
    relevance: float


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def relevance_score(memory: Memory, similarity: float, now: float) -> float:
    recency = 1.0 / (1.0 + memory.days_since_access(now) * _CONTEXT_DECAY_RATE)
    feedback = (memory.feedback_score + 1.0) / 2.0
    return (
        similarity * 0.4
        + memory.confidence * 0.25
        + access_score(memory.access_count) * 0.15
        + recency * 0.1
        + feedback * 0.1
    )


def truncate_to_budget(memories: Sequence[Memory], max_tokens: int) -> list[Memory]:
    """Greedy fill: skip any memory that would overflow, keep trying smaller ones."""
    used = RESERVED_TOKENS
    selected = []
    for memory in memories:
        cost = estimate_tokens(memory.content) + PER_MEMORY_TOKENS
        if used + cost <= max_tokens:
            selected.append(memory)
            used += cost
    return selected


def group_by_category(memories: Sequence[Memory]) -> dict[Category, list[Memory]]:
    groups: dict[Category, list[Memory]] = {}
    for memory in memories:
        groups.setdefault(memory.category, []).append(memory)
    return groups


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def render_markdown(memories: Sequence[Memory], include_metadata: bool, namespace: str) -> str:
    if not memories:
        return "## User Context from Memory\n\nNo memories found."

    lines = ["## User Context from Memory", ""]
    for category, members in group_by_category(memories).items():
        lines.append(f"**{category.value.capitalize()}s:**")
        for memory in members:
            if include_metadata:
                lines.append(f"- {memory.content} *(id: {memory.id[:8]}, confidence: {memory.confidence:.2f})*")
            else:
                lines.append(f"- {memory.content}")
        lines.append("")

    lines.append("---")
    lines.append(f'*{len(memories)} memories loaded from namespace "{namespace}"*')
    return "\n".join(lines)


def render_xml(memories: Sequence[Memory], include_metadata: bool, namespace: str) -> str:
    if not memories:
        return f'<memory_context namespace={quoteattr(namespace)} count="0" />'

    lines = [f'<memory_context namespace={quoteattr(namespace)} count="{len(memories)}">']
    for category, members in group_by_category(memories).items():
        lines.append(f"  <{category.value}s>")
        for memory in members:
            if include_metadata:
                lines.append(
                    f'    <memory id={quoteattr(memory.id)} confidence="{memory.confidence:.2f}">'
                    f"{escape(memory.content)}</memory>"
                )
            else:
                lines.append(f"    <memory>{escape(memory.content)}</memory>")
        lines.append(f"  </{category.value}s>")
    lines.append("</memory_context>")
    return "\n".join(lines)


def render_json(memories: Sequence[Memory], namespace: str, generated_at: float) -> str:
    groups = {
        category.value: [m.to_public_dict() for m in members]
        for category, members in group_by_category(memories).items()
    }
    payload = {
        "namespace": namespace,
        "count": len(memories),
        "memories": groups,
        "generated_at": float_to_iso(generated_at),
    }
    return json.dumps(payload, indent=2)


def render_plain(memories: Sequence[Memory]) -> str:
    return ". ".join(m.content for m in memories)


class ContextService:
    """Builds prompt-ready context blocks from stored memories."""

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: EmbeddingProvider,
        default_namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.embedder = embedder
        self.default_namespace = default_namespace
        self._clock = clock

    async def generate_context(
        self,
        query: str | None = None,
        namespace: str | None = None,
        limit: int = 10,
        format: str = "markdown",
        include_metadata: bool = False,
        categories: Sequence[Category | str] | None = None,
        max_tokens: int = 1000,
    ) -> ContextResult:
        """
        Render up to *limit* (at most 25) memories as a context block.

        Selected memories have their access stats bumped.

        Raises:
            pydantic.ValidationError: On malformed arguments
        """
        params = ContextParams(
            query=query,
            namespace=namespace,
            limit=limit,
            format=format,
            include_metadata=include_metadata,
            categories=list(categories) if categories is not None else None,
            max_tokens=max_tokens,
        )
        namespace = params.namespace or self.default_namespace
        allowed = set(params.categories) if params.categories else None
        now = self._clock()

        candidates = None
        if params.query and params.query.strip():
            candidates = await self._relevant_memories(params.query, namespace, allowed, now)
        if candidates is None:
            candidates = await self._top_memories(namespace, allowed, now)

        chosen = candidates[: min(params.limit, MAX_CONTEXT_MEMORIES)]
        order = {category: index for index, category in enumerate(CATEGORY_ORDER)}
        chosen.sort(key=lambda c: (order[c.memory.category], -c.relevance))
        memories = truncate_to_budget([c.memory for c in chosen], params.max_tokens)

        await self.storage.touch_access([m.id for m in memories], at=now)

        if params.format == "xml":
            content = render_xml(memories, params.include_metadata, namespace)
        elif params.format == "json":
            content = render_json(memories, namespace, now)
        elif params.format == "plain":
            content = render_plain(memories)
        else:
            content = render_markdown(memories, params.include_metadata, namespace)

        seen_categories = list(dict.fromkeys(m.category.value for m in memories))
        metadata = {
            "namespace": namespace,
            "count": len(memories),
            "format": params.format,
            "categories": seen_categories,
            "estimated_tokens": estimate_tokens(content),
            "generated_at": float_to_iso(now),
        }
        logger.info(f"Context generated: {len(memories)} memories, format={params.format}, namespace='{namespace}'")
        return ContextResult(content=content, metadata=metadata)

    def _filter(self, memories: Sequence[Memory], allowed: set[Category] | None) -> list[Memory]:
        return [
            m
            for m in memories
            if (allowed is None or m.category in allowed) and m.feedback_score >= MIN_FEEDBACK_SCORE
        ]

    async def _relevant_memories(
        self,
        query: str,
        namespace: str,
        allowed: set[Category] | None,
        now: float,
    ) -> list[_Candidate] | None:
        """Query-ranked candidates, or None when the query cannot be embedded."""
        try:
            query_embedding = await self.embedder.embed(query)
        except Exception as e:
            logger.warning(f"Failed to embed context query, using top memories instead: {e}")
            return None

        scored = []
        for memory in self._filter(await self.storage.memories_with_embeddings(namespace), allowed):
            try:
                similarity = cosine_similarity(query_embedding, memory.embedding)
            except ValueError:
                similarity = 0.0
            scored.append(_Candidate(memory, relevance_score(memory, similarity, now)))
        scored.sort(key=lambda c: (-c.relevance, c.memory.id))
        return scored

    async def _top_memories(self, namespace: str, allowed: set[Category] | None, now: float) -> list[_Candidate]:
        pool = await self.storage.list_memories(namespace=namespace, limit=TOP_MEMORY_POOL, sort="access_count DESC")
        scored = [_Candidate(m, relevance_score(m, 0.0, now)) for m in self._filter(pool, allowed)]
        scored.sort(key=lambda c: (-c.relevance, c.memory.id))
        return scored
