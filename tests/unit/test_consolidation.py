"""
Tests for the consolidation engine.

Covers:
- duplicate merge keeper rule and access-count folding
- idempotence of repeated runs
- contradiction sweep, uniqueness and proactive checks
- confidence decay floor and stale tagging
- run serialization, cancellation and per-pair error isolation
- contradiction review and resolution
"""

import pytest
import pytest_asyncio
from pydantic import ValidationError

from conftest import FIXED_NOW, blend, unit_vector
from engram_memory.config import ConsolidationSettings
from engram_memory.errors import (
    ConsolidationInProgressError,
    ContradictionAlreadyResolvedError,
    ContradictionNotFoundError,
)
from engram_memory.models.memory import SECONDS_PER_DAY, Memory
from engram_memory.models.validators import ContradictionStatus, ResolutionAction
from engram_memory.services.consolidation_service import (
    STALE_TAG,
    ConsolidationService,
    decayed_confidence,
    is_stale,
    select_keeper,
)
from engram_memory.utils.contradiction_rules import ContradictionRule
from engram_memory.utils.similarity_graph import CancellationToken

DAY = SECONDS_PER_DAY


def _mem(memory_id: str, content: str, **kwargs) -> Memory:
    defaults = {"created_at": FIXED_NOW, "updated_at": FIXED_NOW}
    defaults.update(kwargs)
    return Memory(id=memory_id, content=content, **defaults)


@pytest_asyncio.fixture
async def service(storage, fixed_clock):
    return ConsolidationService(storage, ConsolidationSettings(), clock=fixed_clock)


async def _flag_react_pair(storage, service):
    await storage.create_memory(
        _mem("old", "User uses React for frontend work", entity="frontend", created_at=FIXED_NOW - 2 * DAY)
    )
    await storage.create_memory(
        _mem("new", "User never uses React for frontend work", entity="frontend", created_at=FIXED_NOW - DAY)
    )
    await service.consolidate(detect_duplicates=False, apply_decay=False)
    [view] = await service.get_conflicts()
    return view.contradiction


# ── Pure helpers ───────────────────────────────────────────────────────


class TestSelectKeeper:
    def test_higher_confidence_wins(self):
        a = _mem("a", "x", confidence=0.9, access_count=0)
        b = _mem("b", "x", confidence=0.8, access_count=10)
        assert select_keeper(a, b) == (a, b)
        assert select_keeper(b, a) == (a, b)

    def test_access_count_breaks_confidence_tie(self):
        a = _mem("a", "x", access_count=1)
        b = _mem("b", "x", access_count=4)
        assert select_keeper(a, b) == (b, a)

    def test_recent_update_breaks_access_tie(self):
        a = _mem("a", "x", updated_at=FIXED_NOW + 5)
        b = _mem("b", "x")
        assert select_keeper(a, b) == (a, b)

    def test_smaller_id_breaks_full_tie(self):
        a = _mem("a", "x")
        b = _mem("b", "x")
        assert select_keeper(b, a) == (a, b)


class TestDecayHelpers:
    def test_linear_decay(self):
        memory = _mem("m", "x", confidence=0.8, decay_rate=0.01, created_at=FIXED_NOW - 10 * DAY)
        assert decayed_confidence(memory, FIXED_NOW, 0.1) == pytest.approx(0.72)

    def test_floor(self):
        memory = _mem("m", "x", confidence=0.8, decay_rate=0.01, created_at=FIXED_NOW - 500 * DAY)
        assert decayed_confidence(memory, FIXED_NOW, 0.1) == 0.1

    def test_is_stale(self):
        config = ConsolidationSettings()
        old = _mem("m", "x", confidence=0.1, created_at=FIXED_NOW - 100 * DAY)
        assert is_stale(old, FIXED_NOW, config)
        assert not is_stale(old.model_copy(update={"access_count": 1}), FIXED_NOW, config)
        assert not is_stale(old.model_copy(update={"confidence": 0.5}), FIXED_NOW, config)
        assert not is_stale(old.model_copy(update={"created_at": FIXED_NOW - 10 * DAY}), FIXED_NOW, config)


# ── Phase 1: duplicates ────────────────────────────────────────────────


class TestDuplicateMerge:
    @pytest.mark.asyncio
    async def test_keeper_survives_with_summed_access(self, storage, service):
        await storage.create_memory(_mem("a", "Team uses Docker", embedding=unit_vector(0), confidence=0.9, access_count=2))
        await storage.create_memory(_mem("b", "Team uses Docker!", embedding=unit_vector(0), confidence=0.8, access_count=3))

        result = await service.consolidate(detect_contradictions=False, apply_decay=False)

        assert result.duplicates_removed == 1
        assert await storage.get_memory("b") is None
        keeper = await storage.get_memory("a")
        assert keeper.access_count == 5
        assert keeper.confidence == 0.9
        assert keeper.updated_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_docker_paraphrase_merged(self, storage, service):
        await storage.create_memory(
            _mem("first", "Team uses Docker for local development", embedding=unit_vector(0), created_at=FIXED_NOW - DAY)
        )
        await storage.create_memory(
            _mem("second", "The team develops locally with Docker", embedding=blend(0, 1, 0.2))
        )
        result = await service.consolidate(detect_contradictions=False, apply_decay=False)
        assert result.duplicates_removed == 1
        assert (await storage.stats()).total == 1

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, storage, service):
        for memory_id in ("a", "b", "c"):
            await storage.create_memory(_mem(memory_id, f"copy {memory_id}", embedding=unit_vector(0)))

        first = await service.consolidate(detect_contradictions=False, apply_decay=False)
        second = await service.consolidate(detect_contradictions=False, apply_decay=False)

        assert first.duplicates_removed == 2
        assert second.duplicates_removed == 0
        survivors = await storage.list_memories()
        assert [m.id for m in survivors] == ["a"]

    @pytest.mark.asyncio
    async def test_threshold_override(self, storage, service):
        await storage.create_memory(_mem("a", "one", embedding=unit_vector(0)))
        await storage.create_memory(_mem("b", "two", embedding=blend(0, 1, 0.2)))
        result = await service.consolidate(duplicate_threshold=0.99, detect_contradictions=False, apply_decay=False)
        assert result.duplicates_removed == 0

    @pytest.mark.asyncio
    async def test_other_namespace_untouched(self, storage, service):
        await storage.create_memory(_mem("a", "same", embedding=unit_vector(0), namespace="work"))
        await storage.create_memory(_mem("b", "same", embedding=unit_vector(0), namespace="home"))
        result = await service.consolidate(detect_contradictions=False, apply_decay=False)
        assert result.duplicates_removed == 0

    @pytest.mark.asyncio
    async def test_loser_deleted_elsewhere_is_not_counted(self, storage, service, monkeypatch):
        await storage.create_memory(_mem("a", "Team uses Docker", embedding=unit_vector(0), confidence=0.9, access_count=2))
        await storage.create_memory(_mem("b", "Team uses Docker!", embedding=unit_vector(0), confidence=0.8, access_count=3))
        delete_memory = storage.delete_memory

        async def deleted_concurrently(memory_id):
            # Another writer removes the row first, so this delete matches nothing
            await delete_memory(memory_id)
            return False

        monkeypatch.setattr(storage, "delete_memory", deleted_concurrently)

        result = await service.consolidate(detect_contradictions=False, apply_decay=False)

        assert result.duplicates_removed == 0
        assert result.errors == []
        assert (await storage.get_memory("a")).access_count == 2

    @pytest.mark.asyncio
    async def test_invalid_threshold_rejected_before_work(self, storage, service):
        await storage.create_memory(_mem("a", "same", embedding=unit_vector(0)))
        await storage.create_memory(_mem("b", "same", embedding=unit_vector(0)))
        with pytest.raises(ValidationError):
            await service.consolidate(duplicate_threshold=1.5)
        assert (await storage.stats()).total == 2


# ── Phase 2: contradictions ────────────────────────────────────────────


class TestContradictionSweep:
    @pytest.mark.asyncio
    async def test_negation_pair_flagged_once(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        assert contradiction.memory1_id == "old"
        assert contradiction.memory2_id == "new"
        assert contradiction.entity == "frontend"
        assert contradiction.reason.startswith("Negation conflict")
        assert contradiction.detected_at == FIXED_NOW

        again = await service.consolidate(detect_duplicates=False, apply_decay=False)
        assert again.contradictions_detected == 0
        assert len(await service.get_conflicts()) == 1

    @pytest.mark.asyncio
    async def test_different_entities_not_compared(self, storage, service):
        await storage.create_memory(_mem("a", "Dark mode is enabled in the editor", entity="editor"))
        await storage.create_memory(_mem("b", "Dark mode is disabled in the editor", entity="terminal"))
        result = await service.consolidate(detect_duplicates=False, apply_decay=False)
        assert result.contradictions_detected == 0

    @pytest.mark.asyncio
    async def test_memories_without_entity_skipped(self, storage, service):
        await storage.create_memory(_mem("a", "Dark mode is enabled in the editor"))
        await storage.create_memory(_mem("b", "Dark mode is disabled in the editor"))
        result = await service.consolidate(detect_duplicates=False, apply_decay=False)
        assert result.contradictions_detected == 0

    @pytest.mark.asyncio
    async def test_failing_rule_recorded_and_sweep_continues(self, storage, fixed_clock):
        def explode(text_a, text_b):
            if "boom" in text_a or "boom" in text_b:
                raise RuntimeError("rule blew up")
            return "always"

        service = ConsolidationService(
            storage, clock=fixed_clock, rules=[ContradictionRule("flaky", 0.5, explode)]
        )
        await storage.create_memory(_mem("a", "fine one", entity="e", created_at=FIXED_NOW - 3))
        await storage.create_memory(_mem("b", "boom", entity="e", created_at=FIXED_NOW - 2))
        await storage.create_memory(_mem("c", "fine two", entity="e", created_at=FIXED_NOW - 1))

        result = await service.consolidate(detect_duplicates=False, apply_decay=False)
        assert result.contradictions_detected == 1
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_proactive_check_on_new_memory(self, storage, service):
        await storage.create_memory(
            _mem("old", "Dark mode is enabled in the editor", entity="editor", created_at=FIXED_NOW - DAY)
        )
        new = await storage.create_memory(_mem("new", "Dark mode is disabled in the editor", entity="editor"))

        [flagged] = await service.check_new_memory(new)
        assert (flagged.memory1_id, flagged.memory2_id) == ("old", "new")
        assert flagged.reason == "Boolean flip: enabled vs disabled"
        assert await service.check_new_memory(new) == []

    @pytest.mark.asyncio
    async def test_proactive_check_needs_entity(self, storage, service):
        memory = await storage.create_memory(_mem("m", "Dark mode is disabled"))
        assert await service.check_new_memory(memory) == []


# ── Phase 3/4: decay and stale ─────────────────────────────────────────


class TestDecay:
    @pytest.mark.asyncio
    async def test_decays_and_preserves_updated_at(self, storage, service):
        await storage.create_memory(_mem("m", "aging", confidence=0.8, created_at=FIXED_NOW - 10 * DAY))
        result = await service.consolidate(detect_duplicates=False, detect_contradictions=False)
        assert result.memories_decayed == 1
        memory = await storage.get_memory("m")
        assert memory.confidence == pytest.approx(0.72)
        assert memory.updated_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_floor_and_skips(self, storage, service):
        await storage.create_memory(_mem("ancient", "a", confidence=0.8, created_at=FIXED_NOW - 500 * DAY))
        await storage.create_memory(_mem("below", "b", confidence=0.05, created_at=FIXED_NOW - 500 * DAY))
        await storage.create_memory(_mem("pinned", "c", confidence=0.8, decay_rate=0.0, created_at=FIXED_NOW - 500 * DAY))
        await storage.create_memory(_mem("tiny", "d", confidence=0.8, created_at=FIXED_NOW - DAY))

        result = await service.consolidate(detect_duplicates=False, detect_contradictions=False)

        assert result.memories_decayed == 1
        assert (await storage.get_memory("ancient")).confidence == pytest.approx(0.1)
        assert (await storage.get_memory("below")).confidence == pytest.approx(0.05)
        assert (await storage.get_memory("pinned")).confidence == pytest.approx(0.8)
        assert (await storage.get_memory("tiny")).confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_recent_access_limits_decay(self, storage, service):
        await storage.create_memory(
            _mem("m", "used", confidence=0.8, created_at=FIXED_NOW - 300 * DAY, last_accessed=FIXED_NOW)
        )
        result = await service.consolidate(detect_duplicates=False, detect_contradictions=False)
        assert result.memories_decayed == 0


class TestStaleTagging:
    @pytest.mark.asyncio
    async def test_tags_once(self, storage, service):
        await storage.create_memory(_mem("s", "forgotten", confidence=0.1, created_at=FIXED_NOW - 120 * DAY))
        await storage.create_memory(_mem("k", "kept", confidence=0.9, created_at=FIXED_NOW - 120 * DAY, decay_rate=0.0))

        first = await service.consolidate(detect_duplicates=False, detect_contradictions=False, cleanup_stale=True)
        second = await service.consolidate(detect_duplicates=False, detect_contradictions=False, cleanup_stale=True)

        assert first.stale_cleaned == 1
        assert second.stale_cleaned == 0
        assert STALE_TAG in (await storage.get_memory("s")).tags
        assert STALE_TAG not in (await storage.get_memory("k")).tags

    @pytest.mark.asyncio
    async def test_off_by_default(self, storage, service):
        await storage.create_memory(_mem("s", "forgotten", confidence=0.1, created_at=FIXED_NOW - 120 * DAY))
        result = await service.consolidate()
        assert result.stale_cleaned == 0


# ── Run control ────────────────────────────────────────────────────────


class TestRunControl:
    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, service):
        async with service._lock:
            assert service.running
            with pytest.raises(ConsolidationInProgressError):
                await service.consolidate()
        assert not service.running

    @pytest.mark.asyncio
    async def test_cancelled_token_returns_partial_result(self, storage, service):
        await storage.create_memory(_mem("a", "same", embedding=unit_vector(0)))
        await storage.create_memory(_mem("b", "same", embedding=unit_vector(0)))
        token = CancellationToken()
        token.cancel()

        result = await service.consolidate(cancel_token=token)

        assert result.cancelled
        assert result.duplicates_removed == 0
        assert (await storage.stats()).total == 2
        assert not service.running

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, service):
        assert service.cancel() is False

    @pytest.mark.asyncio
    async def test_empty_store(self, service):
        result = await service.consolidate(cleanup_stale=True)
        assert result.duplicates_removed == 0
        assert result.contradictions_detected == 0
        assert result.memories_decayed == 0
        assert result.stale_cleaned == 0
        assert result.errors == []
        assert result.duration_ms >= 0


# ── Review and resolution ──────────────────────────────────────────────


class TestResolution:
    @pytest.mark.asyncio
    async def test_get_conflicts_joins_memories(self, storage, service):
        await _flag_react_pair(storage, service)
        [view] = await service.get_conflicts()
        assert view.memory1.id == "old"
        assert view.memory2.id == "new"
        assert view.to_dict()["memory2"]["content"] == "User never uses React for frontend work"

    @pytest.mark.asyncio
    async def test_keep_first_deletes_second(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        resolved = await service.resolve_contradiction(contradiction.id, "keep_first")

        assert resolved.status == ContradictionStatus.RESOLVED
        assert resolved.resolution_action == ResolutionAction.KEEP_FIRST
        assert resolved.resolved_at == FIXED_NOW
        assert await storage.get_memory("old") is not None
        assert await storage.get_memory("new") is None
        assert await service.get_conflicts() == []

    @pytest.mark.asyncio
    async def test_keep_second_deletes_first(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        await service.resolve_contradiction(contradiction.id, ResolutionAction.KEEP_SECOND)
        assert await storage.get_memory("old") is None
        assert await storage.get_memory("new") is not None

    @pytest.mark.asyncio
    async def test_keep_both(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        await service.resolve_contradiction(contradiction.id, "keep_both")

        stored = await storage.get_contradiction(contradiction.id)
        assert stored.status == ContradictionStatus.RESOLVED
        assert (await storage.stats()).total == 2
        assert await service.get_conflicts() == []

    @pytest.mark.asyncio
    async def test_dismiss(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        resolved = await service.resolve_contradiction(contradiction.id, "dismiss")
        assert resolved.status == ContradictionStatus.DISMISSED
        assert (await storage.get_contradiction(contradiction.id)).status == ContradictionStatus.DISMISSED

    @pytest.mark.asyncio
    async def test_resolving_twice_raises(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        await service.resolve_contradiction(contradiction.id, "keep_both")
        with pytest.raises(ContradictionAlreadyResolvedError):
            await service.resolve_contradiction(contradiction.id, "dismiss")

    @pytest.mark.asyncio
    async def test_unknown_id(self, service):
        with pytest.raises(ContradictionNotFoundError):
            await service.resolve_contradiction("missing", "dismiss")

    @pytest.mark.asyncio
    async def test_unknown_action(self, storage, service):
        contradiction = await _flag_react_pair(storage, service)
        with pytest.raises(ValidationError):
            await service.resolve_contradiction(contradiction.id, "merge")
