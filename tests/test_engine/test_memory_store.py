"""
Tests for Conversation Memory Store

Tests storing, searching, linking, maintenance, analytics and feedback
re-scoring of conversation memories.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from grounding.engine.memory_store import ConversationMemoryStore
from grounding.errors import NotFoundError, StoreError
from grounding.models.memory import (
    LinkType,
    MemoryPriority,
    MemoryRetention,
    MemoryType,
)
from grounding.models.requests import (
    MemoryLinkRequest,
    MemoryOptimizationRequest,
    MemorySearchRequest,
    OptimizationType,
    QualityFeedback,
    SortField,
    SortOrder,
    TimeRange,
)

from tests.mocks import FakeClock, FakeMemoryRepository
from tests.mocks.factories import BASE_TIME, create_memory_data, create_test_memory


def days_ago(n: float):
    return BASE_TIME - timedelta(days=n)


# =============================================================================
# Store Tests
# =============================================================================

class TestStoreMemory:
    """Tests for memory creation."""

    @pytest.mark.asyncio
    async def test_store_scores_and_persists(self, memory_store, memory_repo, test_user_id):
        """A stored memory is scored, versioned and persisted."""
        memory = await memory_store.store_memory(create_memory_data(test_user_id))

        assert memory.id in memory_repo.memories
        assert 0.0 <= memory.quality_score <= 1.0
        assert 0.0 <= memory.memory_relevance_score <= 1.0
        assert memory.metadata.checksum is not None
        assert memory.created_at == BASE_TIME
        assert memory.expires_at == BASE_TIME + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, memory_store, memory_repo, test_user_id):
        memory_repo.fail = True

        with pytest.raises(StoreError):
            await memory_store.store_memory(create_memory_data(test_user_id))

    @pytest.mark.asyncio
    async def test_similar_memories_are_auto_linked(self, memory_store, memory_repo, test_user_id):
        """A near-duplicate is linked both ways on store."""
        first = await memory_store.store_memory(create_memory_data(test_user_id))
        second = await memory_store.store_memory(create_memory_data(test_user_id))

        assert second.has_link(first.id, LinkType.SIMILAR)
        assert memory_repo.memories[first.id].has_link(second.id, LinkType.SIMILAR)
        assert memory_repo.memories[first.id].metadata.cross_conversation_linked

    @pytest.mark.asyncio
    async def test_dissimilar_memories_are_not_linked(self, memory_store, test_user_id):
        await memory_store.store_memory(create_memory_data(test_user_id, content="What is mitosis?", topic="cells"))
        second = await memory_store.store_memory(
            create_memory_data(
                test_user_id,
                content="Newton's second law relates force and acceleration",
                topic="physics",
                memory_type=MemoryType.AI_RESPONSE,
            )
        )

        assert second.links == []

    @pytest.mark.asyncio
    async def test_auto_links_are_capped(self, memory_store, test_user_id):
        for _ in range(5):
            memory = await memory_store.store_memory(create_memory_data(test_user_id))

        assert len(memory.links) == 3

    @pytest.mark.asyncio
    async def test_high_quality_insight_flagged_for_knowledge_base(self, memory_store, memory_repo, test_user_id):
        memory = await memory_store.store_memory(
            create_memory_data(
                test_user_id,
                memory_type=MemoryType.INSIGHT,
                response="Chlorophyll captures light energy.",
                learning_objective="Explain photosynthesis",
            )
        )

        assert memory.metadata.knowledge_base_candidate
        assert memory_repo.memories[memory.id].metadata.knowledge_base_candidate

    @pytest.mark.asyncio
    async def test_get_memory_is_cached(self, memory_store, memory_repo, test_user_id):
        stored = await memory_store.store_memory(create_memory_data(test_user_id))

        first = await memory_store.get_memory(stored.id)
        second = await memory_store.get_memory(stored.id)

        assert first.id == second.id == stored.id
        assert memory_repo.calls["get_by_id"] == 1

    @pytest.mark.asyncio
    async def test_get_missing_memory(self, memory_store):
        assert await memory_store.get_memory(uuid4()) is None


# =============================================================================
# Search Tests
# =============================================================================

class TestSearchMemories:
    """Tests for filtered, scored memory search."""

    @pytest.mark.asyncio
    async def test_round_trip_search(self, memory_store, test_user_id):
        """A stored memory is found by a word from its content."""
        stored = await memory_store.store_memory(create_memory_data(test_user_id))

        results = await memory_store.search_memories(
            MemorySearchRequest(user_id=test_user_id, query="photosynthesis")
        )

        assert [r.memory.id for r in results] == [stored.id]
        result = results[0]
        assert result.relevance_score > 0.1
        assert "Direct content match" in result.match_reasons
        assert "Topic match" in result.match_reasons
        assert result.snippets[0].field == "content"
        assert "**photosynthesis**" in result.snippets[0].highlighted
        assert "Topic: photosynthesis" in result.context

    @pytest.mark.asyncio
    async def test_search_is_scoped_to_user(self, memory_store, test_user_id):
        await memory_store.store_memory(create_memory_data(uuid4()))

        results = await memory_store.search_memories(
            MemorySearchRequest(user_id=test_user_id, query="photosynthesis")
        )

        assert results == []

    @pytest.mark.asyncio
    async def test_session_memory_expires_after_a_day(self, memory_store, fake_clock, test_user_id):
        await memory_store.store_memory(
            create_memory_data(test_user_id, retention=MemoryRetention.SESSION)
        )
        request = MemorySearchRequest(user_id=test_user_id)

        fake_clock.advance(hours=23)
        assert len(await memory_store.search_memories(request)) == 1

        fake_clock.advance(hours=2)
        assert await memory_store.search_memories(request) == []

        expired = await memory_store.search_memories(request.model_copy(update={"include_expired": True}))
        assert len(expired) == 1

    @pytest.mark.asyncio
    async def test_min_relevance_filters_stored_score(self, memory_store, memory_repo, test_user_id):
        memory_repo.add(create_test_memory(test_user_id, relevance=0.3, retention=MemoryRetention.PERMANENT))
        keep = memory_repo.add(create_test_memory(test_user_id, relevance=0.9, retention=MemoryRetention.PERMANENT))

        results = await memory_store.search_memories(
            MemorySearchRequest(user_id=test_user_id, min_relevance_score=0.5)
        )

        assert [r.memory.id for r in results] == [keep.id]
        assert results[0].relevance_score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_sort_by_date_ascending_and_limit(self, memory_store, memory_repo, test_user_id):
        oldest = memory_repo.add(create_test_memory(test_user_id, created_at=days_ago(3), retention=MemoryRetention.PERMANENT))
        middle = memory_repo.add(create_test_memory(test_user_id, created_at=days_ago(2), retention=MemoryRetention.PERMANENT))
        memory_repo.add(create_test_memory(test_user_id, created_at=days_ago(1), retention=MemoryRetention.PERMANENT))

        results = await memory_store.search_memories(
            MemorySearchRequest(
                user_id=test_user_id,
                sort_by=SortField.DATE,
                sort_order=SortOrder.ASC,
                max_results=2,
            )
        )

        assert [r.memory.id for r in results] == [oldest.id, middle.id]

    @pytest.mark.asyncio
    async def test_search_records_access(self, memory_store, memory_repo, test_user_id):
        stored = await memory_store.store_memory(create_memory_data(test_user_id))

        await memory_store.search_memories(MemorySearchRequest(user_id=test_user_id, query="photosynthesis"))

        assert memory_repo.memories[stored.id].metadata.access_count == 1
        assert memory_repo.memories[stored.id].metadata.last_accessed == BASE_TIME

    @pytest.mark.asyncio
    async def test_include_linked_adds_linked_memories(self, memory_store, memory_repo, test_user_id):
        parent = await memory_store.store_memory(create_memory_data(test_user_id))
        child = memory_repo.add(create_test_memory(test_user_id, content="Quadratic equations", quality_score=0.2))
        await memory_store.link_memories(
            MemoryLinkRequest(
                source_memory_id=parent.id,
                target_memory_id=child.id,
                link_type=LinkType.REFERENCES,
            )
        )

        results = await memory_store.search_memories(
            MemorySearchRequest(user_id=test_user_id, query="photosynthesis", include_linked=True)
        )

        by_id = {r.memory.id: r for r in results}
        assert set(by_id) == {parent.id, child.id}
        assert by_id[child.id].relevance_score == pytest.approx(by_id[parent.id].relevance_score * 0.5)
        assert by_id[child.id].match_reasons == [f"Linked from memory {parent.id}"]

    @pytest.mark.asyncio
    async def test_store_failure_yields_empty_results(self, memory_store, memory_repo, test_user_id):
        memory_repo.fail = True

        results = await memory_store.search_memories(MemorySearchRequest(user_id=test_user_id))

        assert results == []


# =============================================================================
# Link Tests
# =============================================================================

class TestLinkMemories:
    """Tests for explicit memory linking."""

    @pytest.fixture
    def link_request(self):
        def build(source, target, bidirectional=True):
            return MemoryLinkRequest(
                source_memory_id=source.id,
                target_memory_id=target.id,
                link_type=LinkType.SUPPORTS,
                bidirectional=bidirectional,
                strength=0.8,
            )
        return build

    @pytest.mark.asyncio
    async def test_bidirectional_link_is_idempotent(self, memory_store, memory_repo, test_user_id, link_request):
        first = await memory_store.store_memory(create_memory_data(test_user_id, content="What is mitosis?", topic="cells"))
        second = await memory_store.store_memory(
            create_memory_data(
                test_user_id,
                content="Newton's second law relates force and acceleration",
                topic="physics",
                memory_type=MemoryType.AI_RESPONSE,
            )
        )

        assert await memory_store.link_memories(link_request(first, second)) is True
        assert await memory_store.link_memories(link_request(first, second)) is False

        stored_first = memory_repo.memories[first.id]
        stored_second = memory_repo.memories[second.id]
        assert len(stored_first.links) == 1
        assert len(stored_second.links) == 1
        assert stored_first.has_link(second.id, LinkType.SUPPORTS)
        assert stored_second.has_link(first.id, LinkType.SUPPORTS)
        assert stored_first.linked_memories == [second.id]
        assert stored_first.metadata.cross_conversation_linked
        assert stored_second.metadata.cross_conversation_linked

    @pytest.mark.asyncio
    async def test_one_way_link(self, memory_store, memory_repo, test_user_id, link_request):
        first = memory_repo.add(create_test_memory(test_user_id, content="alpha", topic="a"))
        second = memory_repo.add(create_test_memory(test_user_id, content="beta", topic="b"))

        await memory_store.link_memories(link_request(first, second, bidirectional=False))

        assert memory_repo.memories[first.id].has_link(second.id, LinkType.SUPPORTS)
        assert memory_repo.memories[second.id].links == []

    @pytest.mark.asyncio
    async def test_missing_memory_raises(self, memory_store, memory_repo, test_user_id, link_request):
        first = memory_repo.add(create_test_memory(test_user_id))
        ghost = create_test_memory(test_user_id)

        with pytest.raises(NotFoundError):
            await memory_store.link_memories(link_request(first, ghost))

    def test_self_link_rejected(self):
        memory_id = uuid4()
        with pytest.raises(ValueError):
            MemoryLinkRequest(
                source_memory_id=memory_id,
                target_memory_id=memory_id,
                link_type=LinkType.SIMILAR,
            )


# =============================================================================
# Optimization Tests
# =============================================================================

class TestOptimizeMemories:
    """Tests for cleanup, compression, consolidation and linking passes."""

    @pytest.mark.asyncio
    async def test_high_priority_survives_age_cleanup(self, memory_store, memory_repo, test_user_id):
        important = memory_repo.add(
            create_test_memory(
                test_user_id,
                priority=MemoryPriority.HIGH,
                retention=MemoryRetention.PERMANENT,
                created_at=days_ago(40),
            )
        )
        ordinary = memory_repo.add(
            create_test_memory(test_user_id, retention=MemoryRetention.PERMANENT, created_at=days_ago(40))
        )

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(
                user_id=test_user_id,
                optimization_type=OptimizationType.CLEANUP,
                max_age=30,
            )
        )

        assert result.memories_processed == 2
        assert result.memories_removed == 1
        assert important.id in memory_repo.memories
        assert ordinary.id not in memory_repo.memories

    @pytest.mark.asyncio
    async def test_age_cleanup_without_protection(self, memory_store, memory_repo, test_user_id):
        memory_repo.add(
            create_test_memory(
                test_user_id,
                priority=MemoryPriority.CRITICAL,
                retention=MemoryRetention.PERMANENT,
                created_at=days_ago(40),
            )
        )

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(
                user_id=test_user_id,
                optimization_type=OptimizationType.CLEANUP,
                max_age=30,
                preserve_high_priority=False,
            )
        )

        assert result.memories_removed == 1
        assert memory_repo.memories == {}

    @pytest.mark.asyncio
    async def test_quality_threshold_cleanup(self, memory_store, memory_repo, test_user_id):
        critical = memory_repo.add(
            create_test_memory(test_user_id, quality_score=0.2, priority=MemoryPriority.CRITICAL)
        )
        low = memory_repo.add(create_test_memory(test_user_id, quality_score=0.2, priority=MemoryPriority.LOW))
        good = memory_repo.add(create_test_memory(test_user_id, quality_score=0.9))

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(
                user_id=test_user_id,
                optimization_type=OptimizationType.CLEANUP,
                quality_threshold=0.5,
            )
        )

        assert result.memories_removed == 1
        assert set(memory_repo.memories) == {critical.id, good.id}
        assert low.id not in memory_repo.memories
        assert "Removed 1 low-quality or expired memories" in result.recommendations

    @pytest.mark.asyncio
    async def test_expired_memories_always_removed(self, memory_store, memory_repo, fake_clock, test_user_id):
        memory_repo.add(
            create_test_memory(
                test_user_id,
                priority=MemoryPriority.CRITICAL,
                retention=MemoryRetention.SESSION,
            )
        )
        fake_clock.advance(days=2)

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(user_id=test_user_id, optimization_type=OptimizationType.CLEANUP)
        )

        assert result.memories_removed == 1

    @pytest.mark.asyncio
    async def test_cleanup_invalidates_cached_memories(self, memory_store, memory_repo, cache, test_user_id):
        low = memory_repo.add(create_test_memory(test_user_id, quality_score=0.2))
        assert await memory_store.get_memory(low.id) is not None
        assert await cache.get(cache.memory_key(low.id)) is not None

        await memory_store.optimize_memories(
            MemoryOptimizationRequest(
                user_id=test_user_id,
                optimization_type=OptimizationType.CLEANUP,
                quality_threshold=0.5,
            )
        )

        assert await cache.get(cache.memory_key(low.id)) is None
        assert await memory_store.get_memory(low.id) is None

    @pytest.mark.asyncio
    async def test_target_size_trims_lowest_quality(self, memory_store, memory_repo, test_user_id):
        memories = [
            memory_repo.add(create_test_memory(test_user_id, content=f"memory {q}", quality_score=q))
            for q in (0.2, 0.4, 0.6, 0.8)
        ]

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(
                user_id=test_user_id,
                optimization_type=OptimizationType.CLEANUP,
                target_size=2,
            )
        )

        assert result.memories_removed == 2
        assert set(memory_repo.memories) == {memories[2].id, memories[3].id}
        assert result.storage_saved == len("memory 0.2") + len("memory 0.4")

    @pytest.mark.asyncio
    async def test_compression_strips_filler(self, memory_store, memory_repo, test_user_id):
        long_text = "This is a very really long explanation of photosynthesis. " * 12
        memory = memory_repo.add(create_test_memory(test_user_id, content=long_text))
        short = memory_repo.add(create_test_memory(test_user_id, content="very short"))

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(user_id=test_user_id, optimization_type=OptimizationType.COMPRESSION)
        )

        compressed = memory_repo.memories[memory.id]
        assert result.memories_compressed == 1
        assert "very" not in compressed.interaction_data.content
        assert compressed.metadata.compression_applied
        assert compressed.metadata.original_size == len(long_text)
        assert result.storage_saved == len(long_text) - len(compressed.interaction_data.content)
        assert memory_repo.memories[short.id].interaction_data.content == "very short"

    @pytest.mark.asyncio
    async def test_consolidation(self, memory_store, memory_repo, test_user_id):
        memory_repo.add(create_test_memory(test_user_id, content="pretty " * 100 + "done."))

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(user_id=test_user_id, optimization_type=OptimizationType.CONSOLIDATION)
        )

        assert result.memories_compressed == 1
        assert result.quality_improvement == pytest.approx(0.1)
        assert result.recommendations[-1] == "Memory consolidation completed"

    @pytest.mark.asyncio
    async def test_linking_pass(self, memory_store, memory_repo, test_user_id):
        first = memory_repo.add(create_test_memory(test_user_id, content="light reactions", topic="photosynthesis"))
        second = memory_repo.add(create_test_memory(test_user_id, content="light reactions", topic="photosynthesis"))
        memory_repo.add(create_test_memory(test_user_id, content="algebra", topic="math", memory_type=MemoryType.FEEDBACK))

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(user_id=test_user_id, optimization_type=OptimizationType.LINKING)
        )

        assert result.links_created == 1
        assert result.quality_improvement == pytest.approx(0.05)
        assert memory_repo.memories[first.id].has_link(second.id, LinkType.SIMILAR)
        assert memory_repo.memories[second.id].has_link(first.id, LinkType.SIMILAR)

    @pytest.mark.asyncio
    async def test_linking_pass_without_candidates(self, memory_store, memory_repo, test_user_id):
        memory_repo.add(create_test_memory(test_user_id))

        result = await memory_store.optimize_memories(
            MemoryOptimizationRequest(user_id=test_user_id, optimization_type=OptimizationType.LINKING)
        )

        assert result.links_created == 0
        assert result.recommendations == ["No similar memories found for linking"]


# =============================================================================
# Analytics Tests
# =============================================================================

class TestMemoryAnalytics:
    """Tests for per-user statistics."""

    @pytest.fixture
    def seeded(self, memory_repo, test_user_id):
        return [
            memory_repo.add(create_test_memory(
                test_user_id, topic="photosynthesis", quality_score=0.6,
                created_at=days_ago(4), retention=MemoryRetention.PERMANENT,
            )),
            memory_repo.add(create_test_memory(
                test_user_id, topic="photosynthesis", quality_score=0.8,
                created_at=days_ago(2), retention=MemoryRetention.PERMANENT,
            )),
            memory_repo.add(create_test_memory(
                test_user_id, topic="algebra", quality_score=0.4,
                memory_type=MemoryType.AI_RESPONSE, priority=MemoryPriority.HIGH,
                created_at=days_ago(1), retention=MemoryRetention.PERMANENT,
            )),
        ]

    @pytest.mark.asyncio
    async def test_analytics(self, memory_store, seeded, test_user_id):
        analytics = await memory_store.get_memory_analytics(test_user_id)

        assert analytics.total_memories == 3
        assert analytics.memories_by_type == {"user_query": 2, "ai_response": 1}
        assert analytics.memories_by_priority == {"medium": 2, "high": 1}
        assert analytics.memories_by_retention == {"permanent": 3}
        assert analytics.average_quality_score == pytest.approx(0.6)
        assert analytics.top_topics[0].topic == "photosynthesis"
        assert analytics.top_topics[0].count == 2
        assert analytics.top_topics[0].average_quality == pytest.approx(0.7)
        assert analytics.learning_progress[0].date == days_ago(4)
        assert analytics.memory_growth_rate == pytest.approx(3 / 4)

    @pytest.mark.asyncio
    async def test_growth_rate_over_time_range(self, memory_store, seeded, test_user_id):
        analytics = await memory_store.get_memory_analytics(
            test_user_id,
            TimeRange(start=days_ago(10), end=BASE_TIME),
        )

        assert analytics.memory_growth_rate == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_analytics_for_unknown_user(self, memory_store):
        analytics = await memory_store.get_memory_analytics(uuid4())

        assert analytics.total_memories == 0
        assert analytics.memory_growth_rate == 0.0


# =============================================================================
# Feedback Tests
# =============================================================================

class TestUpdateMemoryQuality:
    """Tests for feedback-driven re-scoring."""

    @pytest.mark.asyncio
    async def test_corrections_halve_quality(self, memory_store, memory_repo, test_user_id):
        memory = memory_repo.add(create_test_memory(test_user_id, quality_score=0.8))

        updated = await memory_store.update_memory_quality(
            memory.id, QualityFeedback(corrections=["The Calvin cycle does not need light directly"])
        )

        assert updated.quality_score == pytest.approx(0.4)
        assert memory_repo.memories[memory.id].quality_score == pytest.approx(0.4)
        assert updated.metadata.feedback_collected

    @pytest.mark.asyncio
    async def test_satisfaction_averages_with_current_score(self, memory_store, memory_repo, test_user_id):
        memory = memory_repo.add(create_test_memory(test_user_id, quality_score=0.8))

        updated = await memory_store.update_memory_quality(memory.id, QualityFeedback(user_satisfaction=0.6))

        assert updated.quality_score == pytest.approx(0.7)
        assert updated.metadata.user_satisfaction == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_explicit_score_wins(self, memory_store, memory_repo, test_user_id):
        memory = memory_repo.add(create_test_memory(test_user_id, quality_score=0.8))

        updated = await memory_store.update_memory_quality(
            memory.id, QualityFeedback(quality_score=0.3, user_satisfaction=1.0, corrections=["x"])
        )

        assert updated.quality_score == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, memory_store, memory_repo, test_user_id):
        memory = memory_repo.add(create_test_memory(test_user_id, quality_score=0.8))
        await memory_store.get_memory(memory.id)

        await memory_store.update_memory_quality(memory.id, QualityFeedback(quality_score=0.3))
        cached = await memory_store.get_memory(memory.id)

        assert cached.quality_score == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_missing_memory_raises(self, memory_store):
        with pytest.raises(NotFoundError):
            await memory_store.update_memory_quality(uuid4(), QualityFeedback(quality_score=0.5))


# =============================================================================
# Expiry Sweep Tests
# =============================================================================

class TestDeleteExpired:

    @pytest.mark.asyncio
    async def test_delete_expired(self, memory_store, memory_repo, fake_clock, test_user_id):
        memory_repo.add(create_test_memory(test_user_id, retention=MemoryRetention.SESSION))
        kept = memory_repo.add(create_test_memory(test_user_id, retention=MemoryRetention.SHORT_TERM))
        fake_clock.advance(days=2)

        deleted = await memory_store.delete_expired()

        assert deleted == 1
        assert list(memory_repo.memories) == [kept.id]


class TestLazyDependencies:

    @pytest.mark.asyncio
    async def test_explicit_dependencies_are_used(self, test_settings):
        repo = FakeMemoryRepository()
        clock = FakeClock()
        store = ConversationMemoryStore(settings=test_settings, memory_repo=repo, clock=clock)

        assert await store._get_repo() is repo
