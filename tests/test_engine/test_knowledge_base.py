"""
Tests for Knowledge Base

Tests relevance search and its cache, fact validation, the source
registry, relationships and corpus statistics.
"""

from uuid import uuid4

import pytest

from grounding.errors import NotFoundError, StoreError
from grounding.models.knowledge import (
    ContentType,
    FactRelationship,
    KnowledgeEntryCreate,
    RelationshipType,
    SourceCreate,
    SourceType,
    VerificationStatus,
)
from grounding.models.requests import (
    FactValidationRequest,
    KnowledgeSearchFilters,
    SourceListRequest,
    Strictness,
)

from tests.mocks.factories import BASE_TIME, create_test_entry, create_test_source

FACT = "Photosynthesis converts light energy into chemical energy stored in glucose."


@pytest.fixture
def seed(knowledge_repo):
    def add(*entries):
        for entry in entries:
            knowledge_repo.entries[entry.id] = entry
        return entries
    return add


# =============================================================================
# Search Tests
# =============================================================================

class TestSearchKnowledge:
    """Tests for relevance-ranked knowledge search."""

    @pytest.mark.asyncio
    async def test_results_ranked_by_relevance(self, knowledge_base, seed, test_source):
        on_topic, off_topic = seed(
            create_test_entry(test_source.id, content="Light drives photosynthesis.", topics=["light"]),
            create_test_entry(test_source.id, content="Cells divide by mitosis.", topics=["cells"]),
        )

        results = await knowledge_base.search_knowledge("light")

        assert [r.entry.id for r in results] == [on_topic.id, off_topic.id]
        assert results[0].relevance_score > results[1].relevance_score
        assert results[0].snippets == ["Light drives photosynthesis."]
        assert results[1].snippets == []

    @pytest.mark.asyncio
    async def test_low_relevance_entries_dropped(self, knowledge_base, seed, test_source):
        seed(create_test_entry(test_source.id, content="Unrelated.", topics=[], confidence=0.0, educational_value=0.0))

        assert await knowledge_base.search_knowledge("light") == []

    @pytest.mark.asyncio
    async def test_filters_and_limit(self, knowledge_base, seed, test_source):
        seed(
            *[create_test_entry(test_source.id, content=f"Biology fact {i}", subject="biology") for i in range(5)],
            create_test_entry(test_source.id, content="Chemistry fact", subject="chemistry"),
        )

        results = await knowledge_base.search_knowledge(
            "fact", KnowledgeSearchFilters(subjects=["biology"], limit=3)
        )

        assert len(results) == 3
        assert all(r.entry.subject == "biology" for r in results)

    @pytest.mark.asyncio
    async def test_identical_searches_hit_store_once(self, knowledge_base, knowledge_repo, seed, test_source):
        seed(create_test_entry(test_source.id))
        filters = KnowledgeSearchFilters(subjects=["biology"])

        first = await knowledge_base.search_knowledge("Photosynthesis  LIGHT", filters)
        second = await knowledge_base.search_knowledge("photosynthesis light", filters)

        assert knowledge_repo.calls["search"] == 1
        assert [r.entry.id for r in first] == [r.entry.id for r in second]

    @pytest.mark.asyncio
    async def test_filter_case_is_part_of_cache_key(self, knowledge_base, knowledge_repo, seed, test_source):
        entry, = seed(create_test_entry(test_source.id, subject="Biology"))

        lower = await knowledge_base.search_knowledge(
            "photosynthesis", KnowledgeSearchFilters(subjects=["biology"])
        )
        exact = await knowledge_base.search_knowledge(
            "photosynthesis", KnowledgeSearchFilters(subjects=["Biology"])
        )

        assert lower == []
        assert [r.entry.id for r in exact] == [entry.id]
        assert knowledge_repo.calls["search"] == 2

    @pytest.mark.asyncio
    async def test_cache_expires(self, knowledge_base, knowledge_repo, fake_clock, seed, test_source):
        seed(create_test_entry(test_source.id))

        await knowledge_base.search_knowledge("photosynthesis")
        fake_clock.advance(seconds=601)
        await knowledge_base.search_knowledge("photosynthesis")

        assert knowledge_repo.calls["search"] == 2

    @pytest.mark.asyncio
    async def test_add_entry_invalidates_search_cache(self, knowledge_base, knowledge_repo, seed, test_source):
        seed(create_test_entry(test_source.id))
        before = await knowledge_base.search_knowledge("photosynthesis")

        added = await knowledge_base.add_entry(
            KnowledgeEntryCreate(
                source_id=test_source.id,
                content="Photosynthesis releases oxygen.",
                topics=["photosynthesis"],
                confidence=0.9,
                verification_status=VerificationStatus.VERIFIED,
            )
        )
        after = await knowledge_base.search_knowledge("photosynthesis")

        assert knowledge_repo.calls["search"] == 2
        assert len(after) == len(before) + 1
        assert added.id in {r.entry.id for r in after}

    @pytest.mark.asyncio
    async def test_store_failure_yields_empty_results(self, knowledge_base, knowledge_repo):
        knowledge_repo.fail = True

        assert await knowledge_base.search_knowledge("photosynthesis") == []


# =============================================================================
# Validation Tests
# =============================================================================

class TestValidateFact:
    """Tests for fact validation against the corpus."""

    @pytest.mark.asyncio
    async def test_well_supported_fact_is_valid(self, knowledge_base, seed, source_repo):
        source = create_test_source(reliability=0.9)
        source_repo.sources[source.id] = source
        seed(
            create_test_entry(source.id, content=FACT),
            create_test_entry(source.id, content=FACT.replace("glucose.", "glucose")),
            create_test_entry(source.id, content=FACT.replace("glucose.", "sugars.")),
        )

        result = await knowledge_base.validate_fact(FactValidationRequest(fact=FACT))

        assert result.is_valid
        assert result.confidence == pytest.approx(0.9)
        assert len(result.supporting_evidence) == 3
        assert result.contradicting_evidence == []
        assert "Fact is well-supported by reliable sources" in result.recommendations
        assert all(e.reliability == pytest.approx(0.9) for e in result.supporting_evidence)

    @pytest.mark.asyncio
    async def test_unreliable_source_does_not_validate(self, knowledge_base, seed, source_repo):
        source = create_test_source(reliability=0.2)
        source_repo.sources[source.id] = source
        seed(*(create_test_entry(source.id, content=FACT, confidence=0.95) for _ in range(3)))

        result = await knowledge_base.validate_fact(
            FactValidationRequest(fact=FACT, strictness=Strictness.LENIENT)
        )

        assert not result.is_valid
        assert result.confidence == pytest.approx(0.2)
        assert len(result.supporting_evidence) == 3

    @pytest.mark.asyncio
    async def test_reverification_changes_validation(self, knowledge_base, seed, test_source):
        seed(create_test_entry(test_source.id, content=FACT))

        before = await knowledge_base.validate_fact(FactValidationRequest(fact=FACT))
        await knowledge_base.update_source_verification(
            test_source.id, VerificationStatus.DISPUTED, reliability=0.3
        )
        after = await knowledge_base.validate_fact(FactValidationRequest(fact=FACT))

        assert before.confidence == pytest.approx(0.95)
        assert after.confidence == pytest.approx(0.3)
        assert not after.is_valid

    @pytest.mark.asyncio
    async def test_entries_without_source_are_skipped(self, knowledge_base, seed, test_source):
        seed(
            create_test_entry(test_source.id, content=FACT),
            create_test_entry(uuid4(), content=FACT),
        )

        result = await knowledge_base.validate_fact(FactValidationRequest(fact=FACT))

        assert [e.source_id for e in result.supporting_evidence] == [test_source.id]

    @pytest.mark.asyncio
    async def test_unsupported_fact_is_invalid(self, knowledge_base, seed, test_source):
        seed(create_test_entry(test_source.id, content=FACT))

        result = await knowledge_base.validate_fact(
            FactValidationRequest(fact="Mitochondria are the powerhouse of the cell")
        )

        assert not result.is_valid
        assert result.confidence == 0.0
        assert len(result.contradicting_evidence) == 1
        assert result.recommendations[:3] == [
            "Fact requires additional verification",
            "No supporting evidence found in knowledge base",
            "Contradicting evidence found",
        ]

    @pytest.mark.asyncio
    async def test_strict_validation_ignores_weaker_entries(self, knowledge_base, seed, test_source):
        seed(create_test_entry(test_source.id, content=FACT, confidence=0.8))

        lenient = await knowledge_base.validate_fact(
            FactValidationRequest(fact=FACT, strictness=Strictness.LENIENT)
        )
        strict = await knowledge_base.validate_fact(
            FactValidationRequest(fact=FACT, strictness=Strictness.STRICT)
        )

        assert len(lenient.supporting_evidence) == 1
        assert strict.supporting_evidence == []
        assert not strict.is_valid

    @pytest.mark.asyncio
    async def test_validation_restricted_to_sources(self, knowledge_base, seed, source_repo, test_source):
        other = create_test_source()
        source_repo.sources[other.id] = other
        other_source = other.id
        seed(
            create_test_entry(test_source.id, content=FACT),
            create_test_entry(other_source, content=FACT),
        )

        result = await knowledge_base.validate_fact(FactValidationRequest(fact=FACT, sources=[other_source]))

        assert [e.source_id for e in result.supporting_evidence] == [other_source]

    @pytest.mark.asyncio
    async def test_validation_store_failure_propagates(self, knowledge_base, knowledge_repo):
        knowledge_repo.fail = True

        with pytest.raises(StoreError):
            await knowledge_base.validate_fact(FactValidationRequest(fact=FACT))


# =============================================================================
# Source Registry Tests
# =============================================================================

class TestSources:
    """Tests for the educational source registry."""

    @pytest.mark.asyncio
    async def test_add_and_get_source(self, knowledge_base, source_repo):
        source = await knowledge_base.add_source(
            SourceCreate(title="OpenStax Biology", source_type=SourceType.TEXTBOOK, reliability=0.85)
        )

        fetched = await knowledge_base.get_source(source.id)
        again = await knowledge_base.get_source(source.id)

        assert fetched.title == again.title == "OpenStax Biology"
        assert fetched.created_at == BASE_TIME
        assert source_repo.calls["get_by_id"] == 1

    @pytest.mark.asyncio
    async def test_update_verification(self, knowledge_base, test_source):
        await knowledge_base.get_source(test_source.id)

        updated = await knowledge_base.update_source_verification(
            test_source.id, VerificationStatus.DISPUTED, reliability=1.5
        )
        fetched = await knowledge_base.get_source(test_source.id)

        assert updated.verification_status == VerificationStatus.DISPUTED
        assert updated.reliability == 1.0
        assert fetched.verification_status == VerificationStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_update_verification_keeps_reliability(self, knowledge_base, test_source):
        updated = await knowledge_base.update_source_verification(test_source.id, VerificationStatus.VERIFIED)

        assert updated.reliability == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_update_missing_source_raises(self, knowledge_base):
        with pytest.raises(NotFoundError):
            await knowledge_base.update_source_verification(uuid4(), VerificationStatus.REJECTED)

    @pytest.mark.asyncio
    async def test_source_write_invalidates_search_cache(self, knowledge_base, knowledge_repo, seed, test_source):
        seed(create_test_entry(test_source.id))
        await knowledge_base.search_knowledge("photosynthesis")

        await knowledge_base.add_source(SourceCreate(title="Khan Academy"))
        await knowledge_base.search_knowledge("photosynthesis")

        assert knowledge_repo.calls["search"] == 2

    @pytest.mark.asyncio
    async def test_list_sources(self, knowledge_base, test_source):
        await knowledge_base.add_source(SourceCreate(title="Forum post", reliability=0.3))

        sources = await knowledge_base.list_sources(SourceListRequest(min_reliability=0.8))

        assert [s.id for s in sources] == [test_source.id]

    @pytest.mark.asyncio
    async def test_list_sources_store_failure(self, knowledge_base, source_repo):
        source_repo.fail = True

        assert await knowledge_base.list_sources() == []


# =============================================================================
# Entry, Relationship and Statistics Tests
# =============================================================================

class TestEntries:

    @pytest.mark.asyncio
    async def test_verified_entry_gets_verification_date(self, knowledge_base, test_source):
        verified = await knowledge_base.add_entry(
            KnowledgeEntryCreate(
                source_id=test_source.id,
                content="Glucose is a simple sugar.",
                verification_status=VerificationStatus.VERIFIED,
            )
        )
        pending = await knowledge_base.add_entry(
            KnowledgeEntryCreate(source_id=test_source.id, content="Plants may dream.")
        )

        assert verified.last_verified == BASE_TIME
        assert pending.last_verified is None

    @pytest.mark.asyncio
    async def test_related_facts_ordered_by_strength(self, knowledge_base, knowledge_repo):
        fact_id = uuid4()
        weak = FactRelationship(
            source_fact_id=fact_id, target_fact_id=uuid4(),
            relationship_type=RelationshipType.ELABORATES, strength=0.2,
        )
        strong = FactRelationship(
            source_fact_id=fact_id, target_fact_id=uuid4(),
            relationship_type=RelationshipType.SUPPORTS, strength=0.9,
        )
        knowledge_repo.relationships.extend([weak, strong])

        related = await knowledge_base.get_related_facts(fact_id)

        assert [r.id for r in related] == [strong.id, weak.id]

    @pytest.mark.asyncio
    async def test_statistics(self, knowledge_base, seed, test_source):
        seed(
            create_test_entry(test_source.id),
            create_test_entry(test_source.id, subject="chemistry", content_type=ContentType.CONCEPT),
            create_test_entry(test_source.id, verification_status=VerificationStatus.PENDING),
        )

        stats = await knowledge_base.get_statistics()

        assert stats.total_entries == 3
        assert stats.verified_entries == 2
        assert stats.total_sources == 1
        assert stats.average_reliability == pytest.approx(0.95)
        assert stats.entries_by_subject == {"biology": 2, "chemistry": 1}
        assert stats.entries_by_content_type == {"fact": 2, "concept": 1}

    @pytest.mark.asyncio
    async def test_statistics_store_failure(self, knowledge_base, knowledge_repo):
        knowledge_repo.fail = True

        stats = await knowledge_base.get_statistics()

        assert stats.total_entries == 0
