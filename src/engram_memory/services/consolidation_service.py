"""
Consolidation engine: duplicate merge, contradiction detection, decay, stale tagging.

A run is a sequence of independent phases over the whole store. Each phase
logs and skips per-item failures so one bad pair never aborts the batch;
counts in the returned :class:`ConsolidationResult` are then partial and the
failures are listed in ``errors``.

Runs are serialized per service instance: a second ``consolidate()`` while
one is in flight is rejected rather than queued. The pairwise loops check a
:class:`CancellationToken` so a long run can be stopped cooperatively.
"""

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Sequence

from ..config import ConsolidationSettings
from ..errors import (
    ConsolidationCancelledError,
    ConsolidationInProgressError,
    ContradictionAlreadyResolvedError,
    ContradictionNotFoundError,
)
from ..models.contradiction import ConflictView, Contradiction
from ..models.inputs import ConsolidateParams, ResolveParams
from ..models.memory import Memory
from ..models.responses import ConsolidationResult
from ..models.validators import ContradictionStatus, ResolutionAction
from ..storage.base import MemoryStorage
from ..utils.contradiction_rules import DEFAULT_RULES, ContradictionRule, detect_contradiction
from ..utils.similarity_graph import CancellationToken, PairFinder, brute_force_pairs

logger = logging.getLogger(__name__)

STALE_TAG = "stale"

# Page size when walking the whole store
_SCAN_PAGE_SIZE = 500


def select_keeper(mem_a: Memory, mem_b: Memory) -> tuple[Memory, Memory]:
    """
    Decide which of two duplicates survives.

    Priority: higher confidence, then higher access_count, then more recent
    updated_at, then the lexicographically smaller id.

    Returns:
        ``(keeper, loser)``
    """
    key_a = (mem_a.confidence, mem_a.access_count, mem_a.updated_at)
    key_b = (mem_b.confidence, mem_b.access_count, mem_b.updated_at)
    if key_a != key_b:
        return (mem_a, mem_b) if key_a > key_b else (mem_b, mem_a)
    return (mem_a, mem_b) if mem_a.id <= mem_b.id else (mem_b, mem_a)


def decayed_confidence(memory: Memory, now: float, floor: float) -> float:
    """``max(floor, confidence * (1 - decay_rate * days_since_last_access))``."""
    days = memory.days_since_access(now)
    return max(floor, memory.confidence * (1.0 - memory.decay_rate * days))


def is_stale(memory: Memory, now: float, config: ConsolidationSettings) -> bool:
    return (
        memory.confidence < config.stale_confidence
        and memory.access_count == 0
        and memory.age_days(now) > config.stale_age_days
    )


class ConsolidationService:
    """Mutating maintenance passes over the record store."""

    def __init__(
        self,
        storage: MemoryStorage,
        config: ConsolidationSettings | None = None,
        clock: Callable[[], float] = time.time,
        pair_finder: PairFinder = brute_force_pairs,
        rules: Sequence[ContradictionRule] = DEFAULT_RULES,
    ):
        self.storage = storage
        self.config = config or ConsolidationSettings()
        self._clock = clock
        self._pair_finder = pair_finder
        self._rules = rules
        self._lock = asyncio.Lock()
        self._cancel_token: CancellationToken | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> bool:
        """Ask the in-flight run to stop at its next checkpoint. False if idle."""
        if self._cancel_token is None:
            return False
        self._cancel_token.cancel()
        return True

    # ------------------------------------------------------------------
    # Full run
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
        """
        Run the enabled phases in order: dedup, contradictions, decay, stale.

        Raises:
            ConsolidationInProgressError: If another run is in flight
            pydantic.ValidationError: On malformed arguments
        """
        params = ConsolidateParams(
            detect_duplicates=detect_duplicates,
            detect_contradictions=detect_contradictions,
            apply_decay=apply_decay,
            cleanup_stale=cleanup_stale,
            duplicate_threshold=duplicate_threshold,
        )
        if self._lock.locked():
            raise ConsolidationInProgressError("A consolidation run is already in progress")

        async with self._lock:
            token = cancel_token or CancellationToken()
            self._cancel_token = token
            result = ConsolidationResult()
            started = time.perf_counter()
            logger.info(f"Starting consolidation: {params.model_dump()}")

            try:
                if params.detect_duplicates:
                    threshold = (
                        self.config.duplicate_threshold
                        if params.duplicate_threshold is None
                        else params.duplicate_threshold
                    )
                    await self._merge_duplicates(threshold, token, result)
                    logger.info(f"Duplicates removed: {result.duplicates_removed}")

                if params.detect_contradictions:
                    await self._sweep_contradictions(token, result)
                    logger.info(f"Contradictions detected: {result.contradictions_detected}")

                if params.apply_decay:
                    await self._apply_decay(token, result)
                    logger.info(f"Memories decayed: {result.memories_decayed}")

                if params.cleanup_stale:
                    await self._tag_stale(token, result)
                    logger.info(f"Stale memories tagged: {result.stale_cleaned}")
            except ConsolidationCancelledError:
                logger.warning("Consolidation cancelled, returning partial counts")
                result.cancelled = True
            finally:
                self._cancel_token = None

            result.duration_ms = (time.perf_counter() - started) * 1000
            logger.info(f"Consolidation complete: {result.model_dump()}")
            return result

    async def _iter_memories(self) -> AsyncIterator[Memory]:
        offset = 0
        while True:
            page = await self.storage.list_memories(limit=_SCAN_PAGE_SIZE, offset=offset, sort="created_at ASC")
            for memory in page:
                yield memory
            if len(page) < _SCAN_PAGE_SIZE:
                return
            offset += _SCAN_PAGE_SIZE

    # ------------------------------------------------------------------
    # Phase 1: duplicate merge
    # ------------------------------------------------------------------

    async def _merge_duplicates(self, threshold: float, token: CancellationToken, result: ConsolidationResult) -> None:
        memories = await self.storage.memories_with_embeddings()
        pairs = self._pair_finder(memories, threshold, cancel=token)
        logger.debug(f"Duplicate scan: {len(memories)} memories, {len(pairs)} pairs above {threshold}")

        by_id = {m.id: m for m in memories}
        removed: set[str] = set()

        for pair in pairs:
            token.raise_if_cancelled()
            # A memory already merged away in this run takes no further part
            if pair.id_a in removed or pair.id_b in removed:
                continue

            keeper, loser = select_keeper(by_id[pair.id_a], by_id[pair.id_b])
            try:
                deleted = await self.storage.delete_memory(loser.id)
                removed.add(loser.id)
                if not deleted:
                    logger.warning(f"Duplicate {loser.id[:8]} already gone, skipping pair")
                    continue
                result.duplicates_removed += 1
                updated = await self.storage.update_memory(
                    keeper.id,
                    {"access_count": keeper.access_count + loser.access_count},
                    preserve_timestamps=True,
                )
                if updated is None:
                    logger.warning(f"Duplicate keeper {keeper.id[:8]} vanished mid-merge")
                    removed.add(keeper.id)
                    continue
            except Exception as e:
                logger.warning(f"Failed to merge duplicate pair {keeper.id[:8]}/{loser.id[:8]}: {e}")
                result.errors.append(f"merge {keeper.id[:8]}/{loser.id[:8]}: {e}")
                continue

            by_id[keeper.id] = updated
            logger.info(
                f"Merged duplicate: kept {keeper.id[:8]}, removed {loser.id[:8]} (similarity {pair.similarity:.3f})"
            )

    # ------------------------------------------------------------------
    # Phase 2: contradiction sweep
    # ------------------------------------------------------------------

    async def _sweep_contradictions(self, token: CancellationToken, result: ConsolidationResult) -> None:
        groups: dict[tuple[str, str], list[Memory]] = defaultdict(list)
        async for memory in self._iter_memories():
            if memory.entity:
                groups[(memory.namespace, memory.entity)].append(memory)

        for (namespace, entity), members in groups.items():
            n = len(members)
            for i in range(n):
                token.raise_if_cancelled()
                for j in range(i + 1, n):
                    try:
                        created = await self._flag_pair(members[i], members[j])
                    except Exception as e:
                        logger.warning(
                            f"Contradiction check failed for {members[i].id[:8]}/{members[j].id[:8]} "
                            f"(entity '{entity}', namespace '{namespace}'): {e}"
                        )
                        result.errors.append(f"contradiction {members[i].id[:8]}/{members[j].id[:8]}: {e}")
                        continue
                    if created is not None:
                        result.contradictions_detected += 1

    async def _flag_pair(self, older: Memory, newer: Memory) -> Contradiction | None:
        """Record a contradiction for the pair if a rule fires and none is open yet."""
        verdict = detect_contradiction(older.content, newer.content, self._rules)
        if not verdict.is_contradiction:
            return None
        if await self.storage.contradiction_exists(older.id, newer.id):
            return None

        contradiction = Contradiction(
            memory1_id=older.id,
            memory2_id=newer.id,
            confidence=verdict.confidence,
            reason=verdict.reason,
            category=newer.category,
            entity=newer.entity,
            detected_at=self._clock(),
        )
        created = await self.storage.create_contradiction(contradiction)
        if created is not None:
            logger.info(
                f"Contradiction flagged between {older.id[:8]} and {newer.id[:8]}: {verdict.reason} "
                f"(confidence {verdict.confidence:.2f})"
            )
        return created

    async def check_new_memory(self, memory: Memory) -> list[Contradiction]:
        """
        Proactive check of a freshly stored memory against recent same-entity memories.

        Runs outside the consolidation lock; failures are logged, not raised.
        """
        if not memory.entity:
            return []

        recent = await self.storage.memories_by_entity(
            memory.entity,
            memory.namespace,
            limit=self.config.proactive_window,
            exclude_id=memory.id,
        )
        flagged: list[Contradiction] = []
        for other in recent:
            try:
                created = await self._flag_pair(other, memory)
            except Exception as e:
                logger.warning(f"Proactive contradiction check failed for {memory.id[:8]}/{other.id[:8]}: {e}")
                continue
            if created is not None:
                flagged.append(created)
        return flagged

    # ------------------------------------------------------------------
    # Phase 3: confidence decay
    # ------------------------------------------------------------------

    async def _apply_decay(self, token: CancellationToken, result: ConsolidationResult) -> None:
        now = self._clock()
        floor = self.config.decay_floor
        async for memory in self._iter_memories():
            token.raise_if_cancelled()
            # Never decays, or already at/below the floor: decay must not raise it
            if memory.decay_rate == 0 or memory.confidence <= floor:
                continue

            new_confidence = decayed_confidence(memory, now, floor)
            if abs(new_confidence - memory.confidence) <= self.config.decay_min_change:
                continue
            try:
                await self.storage.update_memory(memory.id, {"confidence": new_confidence}, preserve_timestamps=True)
            except Exception as e:
                logger.warning(f"Failed to decay memory {memory.id[:8]}: {e}")
                result.errors.append(f"decay {memory.id[:8]}: {e}")
                continue
            result.memories_decayed += 1

    # ------------------------------------------------------------------
    # Phase 4: stale tagging
    # ------------------------------------------------------------------

    async def _tag_stale(self, token: CancellationToken, result: ConsolidationResult) -> None:
        now = self._clock()
        async for memory in self._iter_memories():
            token.raise_if_cancelled()
            if STALE_TAG in memory.tags or not is_stale(memory, now, self.config):
                continue
            try:
                await self.storage.update_memory(
                    memory.id,
                    {"tags": memory.tags | {STALE_TAG}},
                    preserve_timestamps=True,
                )
            except Exception as e:
                logger.warning(f"Failed to tag stale memory {memory.id[:8]}: {e}")
                result.errors.append(f"stale {memory.id[:8]}: {e}")
                continue
            result.stale_cleaned += 1

    # ------------------------------------------------------------------
    # Conflict review
    # ------------------------------------------------------------------

    async def get_conflicts(self, limit: int = 100) -> list[ConflictView]:
        """Unresolved contradictions joined with their memories (``None`` when deleted)."""
        views = []
        for contradiction in await self.storage.list_contradictions(ContradictionStatus.UNRESOLVED, limit=limit):
            views.append(
                ConflictView(
                    contradiction=contradiction,
                    memory1=await self.storage.get_memory(contradiction.memory1_id),
                    memory2=await self.storage.get_memory(contradiction.memory2_id),
                )
            )
        return views

    async def resolve_contradiction(self, contradiction_id: str, action: ResolutionAction | str) -> Contradiction:
        """
        Close a contradiction.

        ``keep_first`` deletes memory2, ``keep_second`` deletes memory1,
        ``keep_both`` deletes nothing; all three mark the record resolved.
        ``dismiss`` marks it dismissed. A side that is already gone is ignored.

        Raises:
            ContradictionNotFoundError: Unknown id
            ContradictionAlreadyResolvedError: Record is not unresolved
        """
        params = ResolveParams(contradiction_id=contradiction_id, action=action)
        contradiction = await self.storage.get_contradiction(params.contradiction_id)
        if contradiction is None:
            raise ContradictionNotFoundError(params.contradiction_id)
        if contradiction.status != ContradictionStatus.UNRESOLVED:
            raise ContradictionAlreadyResolvedError(contradiction.id, contradiction.status.value)

        status = (
            ContradictionStatus.DISMISSED if params.action == ResolutionAction.DISMISS else ContradictionStatus.RESOLVED
        )
        resolved = contradiction.model_copy(
            update={"status": status, "resolved_at": self._clock(), "resolution_action": params.action}
        )
        await self.storage.update_contradiction(resolved)

        doomed = {
            ResolutionAction.KEEP_FIRST: contradiction.memory2_id,
            ResolutionAction.KEEP_SECOND: contradiction.memory1_id,
        }.get(params.action)
        if doomed is not None:
            # Deleting the memory also cascades the contradiction record away
            if not await self.storage.delete_memory(doomed):
                logger.info(f"Memory {doomed[:8]} already deleted while resolving {contradiction.id[:8]}")

        logger.info(f"Contradiction {contradiction.id[:8]} {status.value} via {params.action.value}")
        return resolved
