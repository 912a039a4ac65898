"""
Knowledge Base

Relevance search over verified educational knowledge, fact validation
against the corpus, and source registry management.
"""

from datetime import datetime
from uuid import UUID

import structlog

from grounding.clock import Clock, utc_now
from grounding.config import Settings, get_settings
from grounding.engine.scoring import (
    DEFAULT_KNOWLEDGE_POLICY,
    KnowledgeScoringPolicy,
    clamp,
    knowledge_relevance,
)
from grounding.engine.text import jaccard, snippet, words
from grounding.errors import NotFoundError, StoreError
from grounding.models.knowledge import (
    EducationalSource,
    FactRelationship,
    KnowledgeEntry,
    KnowledgeEntryCreate,
    SourceCreate,
    VerificationStatus,
)
from grounding.models.requests import (
    FactValidationRequest,
    FactValidationResult,
    KnowledgeSearchFilters,
    KnowledgeSearchResult,
    KnowledgeStatistics,
    SourceListRequest,
    ValidationEvidence,
)
from grounding.storage.cache import BaseCache, get_cache
from grounding.storage.database import Database, get_database
from grounding.storage.repositories.knowledge_repo import KnowledgeRepository
from grounding.storage.repositories.source_repo import SourceRepository

logger = structlog.get_logger(__name__)

SNIPPET_RADIUS = 50
SEARCH_CACHE_PATTERN = "knowledge:search:*"


class KnowledgeBase:
    """
    Verified educational knowledge.

    Search results are cached per normalized query and filter signature;
    every write invalidates the search cache.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        db: Database | None = None,
        knowledge_repo: KnowledgeRepository | None = None,
        source_repo: SourceRepository | None = None,
        cache: BaseCache | None = None,
        clock: Clock | None = None,
        policy: KnowledgeScoringPolicy | None = None,
    ):
        self.settings = settings or get_settings()
        self._db = db
        self._knowledge_repo = knowledge_repo
        self._source_repo = source_repo
        self._cache = cache
        self._clock = clock or utc_now
        self.policy = policy or DEFAULT_KNOWLEDGE_POLICY

    async def _get_db(self) -> Database:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def _get_knowledge_repo(self) -> KnowledgeRepository:
        if self._knowledge_repo is None:
            self._knowledge_repo = KnowledgeRepository(await self._get_db())
        return self._knowledge_repo

    async def _get_source_repo(self) -> SourceRepository:
        if self._source_repo is None:
            self._source_repo = SourceRepository(await self._get_db())
        return self._source_repo

    async def _get_cache(self) -> BaseCache:
        if self._cache is None:
            self._cache = await get_cache()
        return self._cache

    # =========================================================================
    # Search
    # =========================================================================

    def _limit(self, filters: KnowledgeSearchFilters) -> int:
        limit = filters.limit or self.settings.knowledge_default_limit
        return min(limit, self.settings.knowledge_max_limit)

    async def search_knowledge(
        self,
        query: str,
        filters: KnowledgeSearchFilters | None = None,
    ) -> list[KnowledgeSearchResult]:
        """
        Relevance-ranked knowledge search.

        Read path: a store failure yields an empty list.
        """
        filters = filters or KnowledgeSearchFilters()
        normalized = " ".join(words(query))
        limit = self._limit(filters)

        cache = await self._get_cache()
        key = cache.knowledge_search_key(f"{normalized}|{filters.signature()}|limit={limit}")

        cached = await cache.get_json(key)
        if cached is not None:
            logger.debug("Knowledge search cache hit", query=normalized)
            return [KnowledgeSearchResult.model_validate(item) for item in cached]

        try:
            results = await self._search(normalized, filters, limit)
        except StoreError as e:
            logger.warning("Knowledge search failed", query=normalized, error=str(e))
            return []

        await cache.set_json(
            key,
            [r.model_dump(mode="json") for r in results],
            ttl=self.settings.cache_ttl_knowledge_search,
        )

        logger.info("Knowledge searched", query=normalized, results=len(results))
        return results

    async def _search(
        self,
        query: str,
        filters: KnowledgeSearchFilters,
        limit: int,
    ) -> list[KnowledgeSearchResult]:
        """Uncached search. Store errors propagate."""
        repo = await self._get_knowledge_repo()
        candidates = await repo.search(filters, self.settings.knowledge_candidate_limit)

        results = []
        for entry in candidates:
            score = knowledge_relevance(entry, query, filters, self.policy)
            if score < self.policy.min_relevance:
                continue
            results.append(
                KnowledgeSearchResult(
                    entry=entry,
                    relevance_score=score,
                    snippets=self._snippets(entry.content, query),
                )
            )

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        return results[:limit]

    @staticmethod
    def _snippets(content: str, query: str) -> list[str]:
        snippets: list[str] = []
        terms = [query] if query else []
        terms.extend(w for w in dict.fromkeys(words(query)) if w != query)
        for term in terms:
            found = snippet(content, term, SNIPPET_RADIUS)
            if found and found[0] not in snippets:
                snippets.append(found[0])
            if len(snippets) >= 3:
                break
        return snippets

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_fact(self, request: FactValidationRequest) -> FactValidationResult:
        """
        Check a claim against the stored corpus.

        Raises:
            StoreError: if the corpus cannot be searched
        """
        floor = self.policy.strictness_floors[request.strictness]
        filters = KnowledgeSearchFilters(
            min_reliability=floor,
            source_ids=request.sources,
        )
        normalized = " ".join(words(request.fact))
        candidates = await self._search(normalized, filters, self.settings.knowledge_max_limit)

        supporting: list[ValidationEvidence] = []
        contradicting: list[ValidationEvidence] = []
        sources: dict[UUID, EducationalSource | None] = {}

        for result in candidates:
            entry = result.entry
            if entry.source_id not in sources:
                sources[entry.source_id] = await self.get_source(entry.source_id)
            source = sources[entry.source_id]
            if source is None:
                continue

            similarity = jaccard(request.fact, entry.content)
            evidence = ValidationEvidence(
                entry_id=entry.id,
                source_id=entry.source_id,
                content=entry.content,
                similarity=similarity,
                strength=clamp(similarity * result.relevance_score),
                reliability=source.reliability,
            )
            if similarity > self.policy.supporting_similarity:
                supporting.append(evidence)
            elif similarity < self.policy.contradicting_similarity:
                contradicting.append(evidence)

        supporting_avg = _mean([e.reliability for e in supporting])
        contradicting_avg = _mean([e.reliability for e in contradicting])
        confidence = clamp(supporting_avg - contradicting_avg)
        is_valid = (
            confidence > self.policy.valid_confidence
            and len(supporting) > len(contradicting)
        )

        result = FactValidationResult(
            fact=request.fact,
            is_valid=is_valid,
            confidence=confidence,
            supporting_evidence=supporting,
            contradicting_evidence=contradicting,
            recommendations=self._validation_recommendations(
                is_valid, confidence, supporting, contradicting
            ),
        )

        logger.info(
            "Fact validated",
            strictness=request.strictness.value,
            is_valid=is_valid,
            confidence=round(confidence, 3),
            supporting=len(supporting),
            contradicting=len(contradicting),
        )
        return result

    def _validation_recommendations(
        self,
        is_valid: bool,
        confidence: float,
        supporting: list[ValidationEvidence],
        contradicting: list[ValidationEvidence],
    ) -> list[str]:
        recommendations = []
        if not is_valid:
            recommendations.append("Fact requires additional verification")
        if not supporting:
            recommendations.append("No supporting evidence found in knowledge base")
        if contradicting:
            recommendations.append("Contradicting evidence found")
        if is_valid and len(supporting) >= self.policy.well_supported_count:
            recommendations.append("Fact is well-supported by reliable sources")
        if confidence < self.policy.confirm_confidence:
            recommendations.append("Consider seeking additional sources for confirmation")
        if len(supporting) < self.policy.well_supported_count:
            recommendations.append("More supporting sources would increase confidence")
        return recommendations

    # =========================================================================
    # Sources and entries
    # =========================================================================

    async def add_source(self, data: SourceCreate) -> EducationalSource:
        """
        Register an educational source.

        Raises:
            StoreError: if the source could not be persisted
        """
        now = self._clock()
        source = EducationalSource(**data.model_dump(), created_at=now, updated_at=now)

        repo = await self._get_source_repo()
        try:
            stored = await repo.create(source)
        except StoreError as e:
            logger.error("Failed to add source", title=data.title, error=str(e))
            raise

        await self._invalidate_search()
        return stored

    async def update_source_verification(
        self,
        source_id: UUID,
        status: VerificationStatus,
        reliability: float | None = None,
    ) -> EducationalSource:
        """
        Change a source's verification status, and reliability when given.

        Raises:
            NotFoundError: if the source does not exist
            StoreError: if the update could not be persisted
        """
        if reliability is not None:
            reliability = clamp(reliability)

        repo = await self._get_source_repo()
        updated = await repo.update_verification(source_id, status, reliability, self._clock())
        if updated is None:
            raise NotFoundError("source", source_id)

        cache = await self._get_cache()
        await cache.delete(cache.source_key(source_id))
        await self._invalidate_search()

        logger.info(
            "Source verification updated",
            source_id=str(source_id),
            status=status.value,
            reliability=updated.reliability,
        )
        return updated

    async def get_source(self, source_id: UUID) -> EducationalSource | None:
        """Cached source lookup. None when absent or the store fails."""
        cache = await self._get_cache()
        key = cache.source_key(source_id)

        cached = await cache.get_json(key)
        if cached is not None:
            return EducationalSource.model_validate(cached)

        try:
            repo = await self._get_source_repo()
            source = await repo.get_by_id(source_id)
        except StoreError as e:
            logger.warning("Source lookup failed", source_id=str(source_id), error=str(e))
            return None

        if source is not None:
            await cache.set_json(key, source.model_dump(mode="json"), ttl=self.settings.cache_ttl_source)
        return source

    async def list_sources(self, request: SourceListRequest | None = None) -> list[EducationalSource]:
        request = request or SourceListRequest()
        try:
            repo = await self._get_source_repo()
            return await repo.list_sources(request)
        except StoreError as e:
            logger.warning("Source listing failed", error=str(e))
            return []

    async def add_entry(self, data: KnowledgeEntryCreate) -> KnowledgeEntry:
        """
        Persist a knowledge entry.

        Raises:
            StoreError: if the entry could not be persisted
        """
        now = self._clock()
        last_verified: datetime | None = now if data.verification_status == VerificationStatus.VERIFIED else None
        entry = KnowledgeEntry(
            **data.model_dump(),
            last_verified=last_verified,
            created_at=now,
            updated_at=now,
        )

        repo = await self._get_knowledge_repo()
        try:
            stored = await repo.create(entry)
        except StoreError as e:
            logger.error("Failed to add knowledge entry", source_id=str(data.source_id), error=str(e))
            raise

        await self._invalidate_search()
        return stored

    async def _invalidate_search(self) -> None:
        cache = await self._get_cache()
        removed = await cache.delete_pattern(SEARCH_CACHE_PATTERN)
        if removed:
            logger.debug("Knowledge search cache invalidated", keys=removed)

    # =========================================================================
    # Relationships and statistics
    # =========================================================================

    async def get_related_facts(self, fact_id: UUID, limit: int = 50) -> list[FactRelationship]:
        try:
            repo = await self._get_knowledge_repo()
            return await repo.get_relationships(fact_id, limit=limit)
        except StoreError as e:
            logger.warning("Related fact lookup failed", fact_id=str(fact_id), error=str(e))
            return []

    async def get_statistics(self) -> KnowledgeStatistics:
        """Corpus-wide counts. A store failure yields zeroed statistics."""
        try:
            knowledge_repo = await self._get_knowledge_repo()
            source_repo = await self._get_source_repo()

            total, verified = await knowledge_repo.count_entries()
            source_count, avg_reliability = await source_repo.reliability_summary()
            by_subject = await knowledge_repo.histogram("subject")
            by_type = await knowledge_repo.histogram("content_type")
        except StoreError as e:
            logger.warning("Knowledge statistics failed", error=str(e))
            return KnowledgeStatistics()

        return KnowledgeStatistics(
            total_entries=total,
            verified_entries=verified,
            total_sources=source_count,
            average_reliability=avg_reliability,
            entries_by_subject=by_subject,
            entries_by_content_type=by_type,
        )


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0
