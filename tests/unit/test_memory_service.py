"""
Tests for the MemoryService facade.

Covers the write path (validation, insert-time dedup, embedding failure,
proactive contradiction checks) and end-to-end flows through recall,
consolidation, analytics, feedback and context.
"""

import pytest
import pytest_asyncio
from pydantic import ValidationError

from conftest import FIXED_NOW, blend, unit_vector
from engram_memory.errors import MemoryNotFoundError
from engram_memory.models.responses import Overview
from engram_memory.models.validators import Category
from engram_memory.services.memory_service import MemoryService, merge_content


@pytest_asyncio.fixture
async def service(storage, embedder, test_settings, fixed_clock):
    return MemoryService(storage, embedder, test_settings, clock=fixed_clock)


class TestMergeContent:
    def test_longer_incoming_replaces(self):
        assert merge_content("Uses Docker", "Uses Docker for local development") == "Uses Docker for local development"

    def test_shorter_incoming_appended(self):
        assert merge_content("Uses Docker for local development", "Uses Docker") == (
            "Uses Docker for local development Uses Docker"
        )


class TestStoreMemory:
    @pytest.mark.asyncio
    async def test_created(self, storage, embedder, service):
        embedder.set("User prefers Vim", unit_vector(0))
        result = await service.store_memory(
            "User prefers Vim", entity="editor", category="preference", tags="tools, editor"
        )

        assert result.status == "created"
        stored = await storage.get_memory(result.id)
        assert stored.content == "User prefers Vim"
        assert stored.entity == "editor"
        assert stored.tags == {"tools", "editor"}
        assert stored.confidence == 0.8
        assert stored.decay_rate == 0.01
        assert stored.created_at == FIXED_NOW
        assert stored.embedding == pytest.approx(unit_vector(0))

    @pytest.mark.asyncio
    async def test_near_identical_rejected(self, storage, embedder, service):
        embedder.set("Team uses Docker", unit_vector(0))
        embedder.set("Team uses Docker.", unit_vector(0))
        first = await service.store_memory("Team uses Docker")

        second = await service.store_memory("Team uses Docker.")

        assert second.status == "duplicate"
        assert second.id == first.id
        assert second.existing_content == "Team uses Docker"
        assert second.similarity == pytest.approx(1.0)
        assert (await storage.stats()).total == 1

    @pytest.mark.asyncio
    async def test_similar_merged(self, storage, embedder, service):
        # cos = 1 / sqrt(1 + 0.35^2) ~= 0.944: between merge (0.92) and reject (0.95)
        embedder.set("Team uses Docker", unit_vector(0))
        embedder.set("Team uses Docker for local development", blend(0, 1, 0.35))
        first = await service.store_memory("Team uses Docker", tags=["infra"], confidence=0.7)

        merged = await service.store_memory(
            "Team uses Docker for local development", tags=["dev"], confidence=0.9
        )

        assert merged.status == "merged"
        assert merged.id == first.id
        stored = await storage.get_memory(first.id)
        assert stored.content == "Team uses Docker for local development"
        assert stored.tags == {"infra", "dev"}
        assert stored.confidence == 0.9
        assert stored.embedding == pytest.approx(blend(0, 1, 0.35), abs=1e-6)
        assert (await storage.stats()).total == 1

    @pytest.mark.asyncio
    async def test_force_skips_dedup(self, storage, embedder, service):
        embedder.set("Team uses Docker", unit_vector(0))
        await service.store_memory("Team uses Docker")
        result = await service.store_memory("Team uses Docker", force=True)
        assert result.status == "created"
        assert (await storage.stats()).total == 2

    @pytest.mark.asyncio
    async def test_dedup_is_namespace_scoped(self, storage, embedder, service):
        embedder.set("Team uses Docker", unit_vector(0))
        await service.store_memory("Team uses Docker", namespace="work")
        result = await service.store_memory("Team uses Docker", namespace="home")
        assert result.status == "created"

    @pytest.mark.asyncio
    async def test_embedding_failure_still_stores(self, storage, embedder, service):
        embedder.fail = True
        result = await service.store_memory("Stored without a vector")
        assert result.status == "created"
        stored = await storage.get_memory(result.id)
        assert stored.embedding is None
        assert [m.id for m in await storage.search_full_text("vector")] == [result.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"content": ""},
            {"content": "   "},
            {"content": "ok", "confidence": 1.5},
            {"content": "ok", "confidence": -0.1},
            {"content": "ok", "category": "opinion"},
            {"content": "ok", "decay_rate": -1},
        ],
    )
    async def test_invalid_input_rejected_before_write(self, storage, embedder, service, kwargs):
        with pytest.raises(ValidationError):
            await service.store_memory(**kwargs)
        assert (await storage.stats()).total == 0
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_contradiction_reported_on_create(self, embedder, service):
        embedder.set("Dark mode is enabled in the editor", unit_vector(0))
        embedder.set("Dark mode is disabled in the editor", unit_vector(1))
        await service.store_memory("Dark mode is enabled in the editor", entity="editor")
        result = await service.store_memory("Dark mode is disabled in the editor", entity="editor")

        assert result.status == "created"
        [contradiction] = result.contradictions
        assert contradiction.memory2_id == result.id
        assert contradiction.reason == "Boolean flip: enabled vs disabled"
        assert len(await service.get_conflicts()) == 1


class TestMetadataExtraction:
    @pytest.mark.asyncio
    async def test_missing_metadata_filled_from_content(self, storage, service):
        result = await service.store_memory("We decided to run Postgres in production")

        stored = await storage.get_memory(result.id)
        assert stored.entity == "postgres"
        assert stored.category == Category.DECISION
        assert stored.confidence == 0.8

    @pytest.mark.asyncio
    async def test_first_person_raises_confidence(self, storage, service):
        result = await service.store_memory("I prefer Vim for quick edits")
        stored = await storage.get_memory(result.id)
        assert stored.confidence == 0.9
        assert stored.category == Category.PREFERENCE

    @pytest.mark.asyncio
    async def test_explicit_values_win(self, storage, service):
        result = await service.store_memory("I prefer Docker", entity="containers", category="fact", confidence=0.5)
        stored = await storage.get_memory(result.id)
        assert (stored.entity, stored.category, stored.confidence) == ("containers", Category.FACT, 0.5)

    @pytest.mark.asyncio
    async def test_no_entity_found_leaves_none(self, storage, service):
        result = await service.store_memory("Meeting moved to Tuesday")
        assert (await storage.get_memory(result.id)).entity is None

    @pytest.mark.asyncio
    async def test_contradiction_found_without_explicit_entity(self, embedder, service):
        embedder.set("Dark mode is enabled in docker", unit_vector(0))
        embedder.set("Dark mode is disabled in docker", unit_vector(1))
        await service.store_memory("Dark mode is enabled in docker")

        result = await service.store_memory("Dark mode is disabled in docker")

        assert result.memory.entity == "docker"
        [contradiction] = result.contradictions
        assert contradiction.reason == "Boolean flip: enabled vs disabled"

    @pytest.mark.asyncio
    async def test_sweep_pairs_memories_with_extracted_entity(self, storage, embedder, service):
        embedder.set("Dark mode is enabled in docker", unit_vector(0))
        embedder.set("Dark mode is disabled in docker", unit_vector(1))
        await service.store_memory("Dark mode is enabled in docker")
        await service.store_memory("Dark mode is disabled in docker")
        for contradiction in await storage.list_contradictions():
            await service.resolve_contradiction(contradiction.id, "dismiss")

        result = await service.consolidate(detect_duplicates=False, apply_decay=False)

        assert result.contradictions_detected == 1


class TestLookup:
    @pytest.mark.asyncio
    async def test_get_and_delete(self, service):
        created = await service.store_memory("Short lived")
        assert (await service.get_memory(created.id)).content == "Short lived"
        assert await service.delete_memory(created.id) is True
        with pytest.raises(MemoryNotFoundError):
            await service.get_memory(created.id)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_store_then_recall(self, embedder, service):
        embedder.set("User prefers Vim", unit_vector(0))
        embedder.set("Which editor?", unit_vector(0))
        embedder.set("Team ships on Fridays", unit_vector(3))
        await service.store_memory("User prefers Vim", category="preference")
        await service.store_memory("Team ships on Fridays")

        results = await service.recall("Which editor?", limit=1)

        assert [r.memory.content for r in results] == ["User prefers Vim"]
        assert (await service.get_memory(results[0].memory.id)).access_count == 1

    @pytest.mark.asyncio
    async def test_recall_falls_back_to_full_text(self, embedder, service):
        await service.store_memory("Team uses Docker for local development")
        embedder.fail = True
        [result] = await service.recall("docker")
        assert result.score_breakdown.fts_boost > 0
        assert result.score_breakdown.similarity == 0.0

    @pytest.mark.asyncio
    async def test_consolidate_and_resolve(self, embedder, service):
        embedder.set("Dark mode is enabled in the editor", unit_vector(0))
        embedder.set("Dark mode is disabled in the editor", unit_vector(1))
        await service.store_memory("Dark mode is enabled in the editor", entity="editor")
        await service.store_memory("Dark mode is disabled in the editor", entity="editor")
        [view] = await service.get_conflicts()

        resolved = await service.resolve_contradiction(view.contradiction.id, "keep_second")

        assert resolved.status.value == "resolved"
        result = await service.consolidate(apply_decay=False)
        assert result.contradictions_detected == 0
        assert (await service.get_overview()).total_memories == 1

    @pytest.mark.asyncio
    async def test_feedback_round_trip(self, service):
        created = await service.store_memory("Prefer small pull requests")
        for _ in range(5):
            await service.record_feedback(created.id, helpful=True)

        stats = await service.get_feedback_stats(created.id)
        assert stats.total_feedback == 5
        assert stats.confidence == pytest.approx(0.85)
        assert len(await service.get_feedback_history(created.id)) == 5
        assert await service.get_low_feedback_memories() == []

    @pytest.mark.asyncio
    async def test_generate_context(self, service):
        await service.store_memory("User prefers Vim", category="preference")
        result = await service.generate_context(format="plain")
        assert result.content == "User prefers Vim"


class TestHealth:
    def test_empty_overview_scores_zero(self):
        assert MemoryService.health_score(Overview()) == 0

    @pytest.mark.asyncio
    async def test_health_report(self, embedder, service):
        embedder.set("User prefers Vim", unit_vector(0))
        embedder.set("Team uses Docker", unit_vector(1))
        await service.store_memory("User prefers Vim", category="preference")
        await service.store_memory("Team uses Docker")
        await service.recall("Vim", limit=5, threshold=0.0)

        report = await service.health_report()

        assert 0 <= report.score <= 100
        assert report.overview.total_memories == 2
        assert report.duplicate_count == 0
        assert len(report.trends.daily) == 31
        assert report.score == MemoryService.health_score(report.overview, 0, report.trends)

    @pytest.mark.asyncio
    async def test_empty_store_report(self, service):
        report = await service.health_report()
        assert report.score == 0
