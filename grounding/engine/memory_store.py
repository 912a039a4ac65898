"""
Conversation Memory Store

Persists tutoring interactions as scored memories, links similar ones,
searches them with query-specific relevance, runs retention and
compression maintenance and produces per-user analytics.
"""

import hashlib
import hmac
import time
from collections import Counter, defaultdict
from datetime import timedelta
from uuid import UUID, uuid4

import structlog

from grounding.clock import Clock, utc_now
from grounding.config import Settings, get_settings
from grounding.engine.scoring import (
    DEFAULT_MEMORY_POLICY,
    MemoryScoringPolicy,
    clamp,
    memory_similarity,
    quality_score,
    relevance_score,
    search_relevance,
)
from grounding.engine.text import snippet, strip_filler
from grounding.errors import NotFoundError, StoreError
from grounding.models.memory import (
    REVERSE_LINK_TYPES,
    LinkType,
    Memory,
    MemoryCreate,
    MemoryLink,
    MemoryMetadata,
    MemoryPriority,
    MemoryType,
    compute_expiry,
)
from grounding.models.requests import (
    MemoryAnalytics,
    MemoryLinkRequest,
    MemoryOptimizationRequest,
    MemoryOptimizationResult,
    MemorySearchRequest,
    MemorySearchResult,
    OptimizationType,
    ProgressPoint,
    QualityFeedback,
    SearchSnippet,
    SortField,
    SortOrder,
    TimeRange,
    TopicStat,
)
from grounding.storage.cache import BaseCache, get_cache
from grounding.storage.database import Database, get_database
from grounding.storage.repositories.memory_repo import MemoryRepository

logger = structlog.get_logger(__name__)

HIGH_PRIORITIES = frozenset({MemoryPriority.HIGH, MemoryPriority.CRITICAL})
COMPRESSION_MIN_LENGTH = 500
SNIPPET_RADIUS = 30


class ConversationMemoryStore:
    """
    Store for conversation memories.

    Operations:
    - store_memory: score, persist, auto-link similar memories
    - search_memories: filtered, query-scored search with snippets
    - link_memories: idempotent directed (optionally bidirectional) links
    - optimize_memories: cleanup, compression, consolidation or linking
    - get_memory_analytics: per-user statistics
    - update_memory_quality: feedback-driven re-scoring
    """

    def __init__(
        self,
        settings: Settings | None = None,
        db: Database | None = None,
        memory_repo: MemoryRepository | None = None,
        cache: BaseCache | None = None,
        clock: Clock | None = None,
        policy: MemoryScoringPolicy | None = None,
    ):
        self.settings = settings or get_settings()
        self._db = db
        self._memory_repo = memory_repo
        self._cache = cache
        self._clock = clock or utc_now
        self.policy = policy or DEFAULT_MEMORY_POLICY

        self.similarity_threshold = self.settings.memory_similarity_threshold

    # Dependency getters
    async def _get_repo(self) -> MemoryRepository:
        if self._memory_repo is None:
            if self._db is None:
                self._db = await get_database()
            self._memory_repo = MemoryRepository(self._db)
        return self._memory_repo

    async def _get_cache(self) -> BaseCache:
        if self._cache is None:
            self._cache = await get_cache()
        return self._cache

    # =========================================================================
    # Store
    # =========================================================================

    async def store_memory(self, data: MemoryCreate) -> Memory:
        """
        Score and persist a new memory, then auto-link similar memories.

        Raises:
            StoreError: if the memory could not be persisted
        """
        repo = await self._get_repo()
        now = self._clock()

        memory = Memory(
            user_id=data.user_id,
            conversation_id=data.conversation_id,
            memory_type=data.memory_type,
            interaction_data=data.interaction_data,
            quality_score=quality_score(data, self.policy),
            memory_relevance_score=relevance_score(data, self.policy),
            priority=data.priority,
            retention=data.retention,
            tags=data.tags,
            metadata=MemoryMetadata(
                source=data.source,
                checksum=self._checksum(data.interaction_data.content),
            ),
            created_at=now,
            updated_at=now,
            expires_at=compute_expiry(data.retention, now),
        )

        try:
            stored = await repo.create(memory)
        except StoreError as e:
            logger.error("Failed to store memory", user_id=str(data.user_id), error=str(e))
            raise

        logger.info(
            "Memory stored",
            memory_id=str(stored.id),
            user_id=str(stored.user_id),
            memory_type=stored.memory_type.value,
            quality_score=round(stored.quality_score, 3),
        )

        try:
            stored = await self._post_store(stored)
        except StoreError as e:
            logger.warning("Post-store processing failed", memory_id=str(stored.id), error=str(e))

        return stored

    async def _post_store(self, memory: Memory) -> Memory:
        """Auto-link similar memories and flag knowledge base candidates."""
        repo = await self._get_repo()

        candidates = await repo.list_for_user(
            memory.user_id,
            exclude_id=memory.id,
            limit=self.settings.memory_link_candidate_limit,
        )
        scored = sorted(
            ((memory_similarity(memory, other, self.policy), other) for other in candidates),
            key=lambda pair: pair[0],
            reverse=True,
        )
        similar = [(s, m) for s, m in scored if s > self.similarity_threshold]
        similar = similar[: self.settings.memory_max_auto_links]

        for similarity, other in similar:
            await self._connect(memory, other, LinkType.SIMILAR, similarity, bidirectional=True)

        if similar:
            logger.info("Similar memories linked", memory_id=str(memory.id), links=len(similar))

        if (
            memory.memory_type == MemoryType.INSIGHT
            and memory.quality_score > self.policy.knowledge_candidate_quality
            and not memory.metadata.knowledge_base_candidate
        ):
            memory.metadata.knowledge_base_candidate = True
            memory.updated_at = self._clock()
            await self._save(memory)
            logger.info(
                "Insight flagged for knowledge base integration",
                memory_id=str(memory.id),
                quality_score=memory.quality_score,
            )

        return memory

    def _checksum(self, content: str) -> str:
        key = self.settings.memory_checksum_key.get_secret_value().encode()
        return hmac.new(key, content.encode(), hashlib.sha256).hexdigest()

    async def get_memory(self, memory_id: UUID) -> Memory | None:
        """Cached lookup. Returns None when absent or the store fails."""
        cache = await self._get_cache()
        key = cache.memory_key(memory_id)

        cached = await cache.get_json(key)
        if cached is not None:
            return Memory.model_validate(cached)

        try:
            repo = await self._get_repo()
            memory = await repo.get_by_id(memory_id)
        except StoreError as e:
            logger.warning("Memory lookup failed", memory_id=str(memory_id), error=str(e))
            return None

        if memory is not None:
            await cache.set_json(key, memory.model_dump(mode="json"), ttl=self.settings.cache_ttl_memory)
        return memory

    async def _save(self, memory: Memory) -> Memory:
        repo = await self._get_repo()
        saved = await repo.update(memory)
        cache = await self._get_cache()
        await cache.delete(cache.memory_key(memory.id))
        if saved is None:
            raise NotFoundError("memory", memory.id)
        memory.version = saved.version
        return memory

    # =========================================================================
    # Search
    # =========================================================================

    async def search_memories(self, request: MemorySearchRequest) -> list[MemorySearchResult]:
        """
        Search a user's memories.

        Read path: a store failure yields an empty list.
        """
        try:
            repo = await self._get_repo()
            memories = await repo.list_for_user(
                request.user_id,
                conversation_id=request.conversation_id,
                memory_types=request.memory_types,
                priorities=request.priorities,
                retentions=request.retentions,
                tags=request.tags,
                start=request.time_range.start if request.time_range else None,
                end=request.time_range.end if request.time_range else None,
                limit=self.settings.memory_optimization_batch_limit,
            )
        except StoreError as e:
            logger.warning("Memory search failed", user_id=str(request.user_id), error=str(e))
            return []

        now = self._clock()
        query = (request.query or "").strip()
        results: list[MemorySearchResult] = []

        for memory in memories:
            if memory.memory_relevance_score < request.min_relevance_score:
                continue
            if not request.include_expired and memory.is_expired(now):
                continue

            if query:
                score = search_relevance(memory, query, self.policy)
                if score < self.policy.search_min_relevance:
                    continue
            else:
                score = memory.memory_relevance_score

            results.append(
                MemorySearchResult(
                    memory=memory,
                    relevance_score=score,
                    match_reasons=self._match_reasons(memory, request),
                    snippets=self._snippets(memory, query),
                    context=self._memory_context(memory),
                )
            )

        if request.include_linked and results:
            results.extend(await self._linked_results(results, request))

        self._sort_results(results, request.sort_by, request.sort_order)
        limit = min(request.max_results, self.settings.memory_max_search_results)
        results = results[:limit]

        if results:
            try:
                await repo.record_access([r.memory.id for r in results], now)
            except StoreError as e:
                logger.debug("Access tracking failed", error=str(e))

        logger.debug(
            "Memories searched",
            user_id=str(request.user_id),
            candidates=len(memories),
            returned=len(results),
        )
        return results

    async def _linked_results(
        self,
        results: list[MemorySearchResult],
        request: MemorySearchRequest,
    ) -> list[MemorySearchResult]:
        """Results for memories linked from the current hits."""
        seen = {r.memory.id for r in results}
        parents: dict[UUID, MemorySearchResult] = {}
        for result in results:
            for target_id in result.memory.linked_memories:
                if target_id not in seen and target_id not in parents:
                    parents[target_id] = result

        if not parents:
            return []

        try:
            repo = await self._get_repo()
            linked = await repo.get_many(list(parents))
        except StoreError as e:
            logger.warning("Linked memory lookup failed", error=str(e))
            return []

        now = self._clock()
        extra = []
        for memory in linked:
            if memory.user_id != request.user_id:
                continue
            if not request.include_expired and memory.is_expired(now):
                continue
            parent = parents[memory.id]
            extra.append(
                MemorySearchResult(
                    memory=memory,
                    relevance_score=clamp(parent.relevance_score * 0.5),
                    match_reasons=[f"Linked from memory {parent.memory.id}"],
                    context=self._memory_context(memory),
                )
            )
        return extra

    def _match_reasons(self, memory: Memory, request: MemorySearchRequest) -> list[str]:
        reasons = []
        query = (request.query or "").strip().lower()
        interaction = memory.interaction_data

        if query:
            if query in interaction.content.lower():
                reasons.append("Direct content match")
            if interaction.topic and query in interaction.topic.lower():
                reasons.append("Topic match")
        if request.memory_types and memory.memory_type in request.memory_types:
            reasons.append(f"Memory type: {memory.memory_type.value}")
        if request.priorities and memory.priority in request.priorities:
            reasons.append(f"Priority: {memory.priority.value}")
        if request.tags and set(request.tags) & set(memory.tags):
            reasons.append("Tag match")
        if memory.quality_score > self.policy.high_quality:
            reasons.append("High quality score")

        return reasons

    def _snippets(self, memory: Memory, query: str) -> list[SearchSnippet]:
        if not query:
            return []
        interaction = memory.interaction_data
        snippets = []
        for field, text in (
            ("content", interaction.content),
            ("response", interaction.response),
            ("learning_objective", interaction.learning_objective),
        ):
            found = snippet(text, query, SNIPPET_RADIUS)
            if found:
                plain, highlighted = found
                snippets.append(SearchSnippet(field=field, text=plain, highlighted=highlighted))
        return snippets[:3]

    def _memory_context(self, memory: Memory) -> str:
        parts = []
        interaction = memory.interaction_data
        if memory.conversation_id:
            parts.append(f"Conversation: {memory.conversation_id}")
        if interaction.topic:
            parts.append(f"Topic: {interaction.topic}")
        if interaction.subject:
            parts.append(f"Subject: {interaction.subject}")
        parts.append(f"Type: {memory.memory_type.value}")
        if memory.priority != MemoryPriority.MEDIUM:
            parts.append(f"Priority: {memory.priority.value}")
        if memory.quality_score > self.policy.high_quality:
            parts.append("High quality")
        return " • ".join(parts)

    @staticmethod
    def _sort_results(results: list[MemorySearchResult], sort_by: SortField, order: SortOrder) -> None:
        keys = {
            SortField.RELEVANCE: lambda r: r.relevance_score,
            SortField.DATE: lambda r: r.memory.created_at,
            SortField.QUALITY: lambda r: r.memory.quality_score,
            SortField.PRIORITY: lambda r: r.memory.priority.rank,
        }
        results.sort(key=keys[sort_by], reverse=order == SortOrder.DESC)

    # =========================================================================
    # Linking
    # =========================================================================

    async def link_memories(self, request: MemoryLinkRequest) -> bool:
        """
        Link two memories.

        Returns True when a new edge was created, False when every edge
        already existed.

        Raises:
            NotFoundError: if either memory is missing
            StoreError: if the link could not be persisted
        """
        repo = await self._get_repo()
        source = await repo.get_by_id(request.source_memory_id)
        if source is None:
            raise NotFoundError("memory", request.source_memory_id)
        target = await repo.get_by_id(request.target_memory_id)
        if target is None:
            raise NotFoundError("memory", request.target_memory_id)

        created = await self._connect(
            source,
            target,
            request.link_type,
            request.strength,
            bidirectional=request.bidirectional,
        )

        logger.info(
            "Memories linked",
            source_id=str(source.id),
            target_id=str(target.id),
            link_type=request.link_type.value,
            bidirectional=request.bidirectional,
            created=created,
        )
        return created

    async def _connect(
        self,
        source: Memory,
        target: Memory,
        link_type: LinkType,
        strength: float,
        bidirectional: bool,
    ) -> bool:
        """Add the edge(s) between two loaded memories and persist both."""
        now = self._clock()
        created = False
        source_dirty = target_dirty = False

        if not source.has_link(target.id, link_type):
            source.links.append(
                MemoryLink(target_id=target.id, link_type=link_type, strength=clamp(strength), created_at=now)
            )
            created = source_dirty = True

        if bidirectional:
            reverse = REVERSE_LINK_TYPES[link_type]
            if not target.has_link(source.id, reverse):
                target.links.append(
                    MemoryLink(target_id=source.id, link_type=reverse, strength=clamp(strength), created_at=now)
                )
                created = target_dirty = True

        for memory in (source, target):
            if not memory.metadata.cross_conversation_linked:
                memory.metadata.cross_conversation_linked = True
                if memory is source:
                    source_dirty = True
                else:
                    target_dirty = True

        if source_dirty:
            source.updated_at = now
            await self._save(source)
        if target_dirty:
            target.updated_at = now
            await self._save(target)

        return created

    # =========================================================================
    # Optimization
    # =========================================================================

    async def optimize_memories(self, request: MemoryOptimizationRequest) -> MemoryOptimizationResult:
        """
        Run one maintenance pass over a user's memories.

        Raises:
            StoreError: if candidates cannot be loaded or changes persisted
        """
        started = time.perf_counter()
        repo = await self._get_repo()

        memories = await repo.list_for_user(
            request.user_id,
            conversation_id=request.conversation_id,
            retentions=[request.retention_policy] if request.retention_policy else None,
            limit=self.settings.memory_optimization_batch_limit,
        )

        result = MemoryOptimizationResult(
            optimization_id=uuid4(),
            optimization_type=request.optimization_type,
            memories_processed=len(memories),
        )

        if request.optimization_type == OptimizationType.CLEANUP:
            removed, saved, recs = await self._cleanup(memories, request)
            result.memories_removed = removed
            result.storage_saved = saved
            result.recommendations = recs

        elif request.optimization_type == OptimizationType.COMPRESSION:
            compressed, saved, recs = await self._compress(memories)
            result.memories_compressed = compressed
            result.storage_saved = saved
            result.recommendations = recs

        elif request.optimization_type == OptimizationType.CONSOLIDATION:
            compressed, compress_saved, compress_recs = await self._compress(memories)
            removed, cleanup_saved, cleanup_recs = await self._cleanup(memories, request)
            result.memories_compressed = compressed
            result.memories_removed = removed
            result.storage_saved = compress_saved + cleanup_saved
            result.quality_improvement = 0.1
            result.recommendations = [*cleanup_recs, *compress_recs, "Memory consolidation completed"]

        elif request.optimization_type == OptimizationType.LINKING:
            links, recs = await self._link_all(memories)
            result.links_created = links
            result.quality_improvement = clamp(links * 0.05)
            result.recommendations = recs

        result.processing_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Memory optimization completed",
            optimization_id=str(result.optimization_id),
            user_id=str(request.user_id),
            optimization_type=request.optimization_type.value,
            processed=result.memories_processed,
            removed=result.memories_removed,
            compressed=result.memories_compressed,
            links=result.links_created,
        )
        return result

    def _should_remove(self, memory: Memory, request: MemoryOptimizationRequest) -> bool:
        now = self._clock()
        if memory.is_expired(now):
            return True

        protected = memory.priority in HIGH_PRIORITIES
        if request.quality_threshold is not None and memory.quality_score < request.quality_threshold:
            if not (request.preserve_recent and protected):
                return True

        if request.max_age is not None:
            age = now - memory.created_at
            if age > timedelta(days=request.max_age):
                if not (request.preserve_high_priority and protected):
                    return True

        return False

    async def _cleanup(
        self,
        memories: list[Memory],
        request: MemoryOptimizationRequest,
    ) -> tuple[int, int, list[str]]:
        to_remove = [m for m in memories if self._should_remove(m, request)]

        if request.target_size is not None:
            removing = {m.id for m in to_remove}
            survivors = [m for m in memories if m.id not in removing]
            excess = len(survivors) - request.target_size
            if excess > 0:
                expendable = [
                    m for m in survivors
                    if not (request.preserve_high_priority and m.priority in HIGH_PRIORITIES)
                ]
                expendable.sort(key=lambda m: m.quality_score)
                to_remove.extend(expendable[:excess])

        recommendations: list[str] = []
        if not to_remove:
            return 0, 0, recommendations

        repo = await self._get_repo()
        cache = await self._get_cache()
        removed = await repo.delete_many([m.id for m in to_remove])
        await cache.invalidate(*(cache.memory_key(m.id) for m in to_remove))
        storage_saved = sum(len(m.interaction_data.content) for m in to_remove)

        removed_ids = {m.id for m in to_remove}
        memories[:] = [m for m in memories if m.id not in removed_ids]

        if removed > 0:
            recommendations.append(f"Removed {removed} low-quality or expired memories")
            recommendations.append(f"Saved approximately {storage_saved} bytes of storage")
        return removed, storage_saved, recommendations

    async def _compress(self, memories: list[Memory]) -> tuple[int, int, list[str]]:
        compressed = 0
        storage_saved = 0

        for memory in memories:
            content = memory.interaction_data.content
            if memory.metadata.compression_applied or len(content) <= COMPRESSION_MIN_LENGTH:
                continue
            shrunk = strip_filler(content)
            if len(shrunk) >= len(content):
                continue

            memory.interaction_data.content = shrunk
            memory.metadata.compression_applied = True
            memory.metadata.original_size = len(content)
            memory.metadata.compressed_size = len(shrunk)
            memory.updated_at = self._clock()
            await self._save(memory)

            compressed += 1
            storage_saved += len(content) - len(shrunk)

        recommendations = []
        if compressed > 0:
            recommendations.append(f"Compressed {compressed} memories")
            recommendations.append(f"Saved {storage_saved} bytes through compression")
        return compressed, storage_saved, recommendations

    async def _link_all(self, memories: list[Memory]) -> tuple[int, list[str]]:
        links_created = 0
        for i, first in enumerate(memories):
            for second in memories[i + 1:]:
                similarity = memory_similarity(first, second, self.policy)
                if similarity > self.similarity_threshold:
                    if await self._connect(first, second, LinkType.SIMILAR, similarity, bidirectional=True):
                        links_created += 1

        if links_created > 0:
            recommendations = [
                f"Created {links_created} memory links",
                "Cross-conversation knowledge links established",
            ]
        else:
            recommendations = ["No similar memories found for linking"]
        return links_created, recommendations

    # =========================================================================
    # Analytics and feedback
    # =========================================================================

    async def get_memory_analytics(
        self,
        user_id: UUID,
        time_range: TimeRange | None = None,
    ) -> MemoryAnalytics:
        """Per-user statistics. A store failure yields empty analytics."""
        try:
            repo = await self._get_repo()
            memories = await repo.list_for_user(
                user_id,
                start=time_range.start if time_range else None,
                end=time_range.end if time_range else None,
                limit=self.settings.memory_optimization_batch_limit,
            )
        except StoreError as e:
            logger.warning("Memory analytics failed", user_id=str(user_id), error=str(e))
            return MemoryAnalytics(user_id=user_id)

        analytics = MemoryAnalytics(user_id=user_id, total_memories=len(memories))
        if not memories:
            return analytics

        analytics.memories_by_type = dict(Counter(m.memory_type.value for m in memories))
        analytics.memories_by_priority = dict(Counter(m.priority.value for m in memories))
        analytics.memories_by_retention = dict(Counter(m.retention.value for m in memories))
        analytics.average_quality_score = sum(m.quality_score for m in memories) / len(memories)
        analytics.average_relevance_score = (
            sum(m.memory_relevance_score for m in memories) / len(memories)
        )

        topic_quality: dict[str, list[float]] = defaultdict(list)
        for memory in memories:
            if memory.interaction_data.topic:
                topic_quality[memory.interaction_data.topic].append(memory.quality_score)
        ranked_topics = sorted(topic_quality.items(), key=lambda item: len(item[1]), reverse=True)
        analytics.top_topics = [
            TopicStat(topic=topic, count=len(scores), average_quality=sum(scores) / len(scores))
            for topic, scores in ranked_topics[:10]
        ]

        chronological = sorted(memories, key=lambda m: m.created_at)
        analytics.learning_progress = [
            ProgressPoint(
                date=m.created_at,
                topic=m.interaction_data.topic,
                quality_score=m.quality_score,
                memory_type=m.memory_type,
            )
            for m in chronological[:10]
        ]

        if time_range is not None:
            days = time_range.days
        else:
            days = max(1.0, (self._clock() - chronological[0].created_at).total_seconds() / 86400)
        analytics.memory_growth_rate = len(memories) / days if days > 0 else float(len(memories))

        analytics.cross_conversation_links = sum(
            1 for m in memories if m.metadata.cross_conversation_linked
        )
        analytics.knowledge_base_integrations = sum(
            1 for m in memories
            if m.metadata.knowledge_base_linked or m.metadata.knowledge_base_candidate
        )
        return analytics

    async def update_memory_quality(self, memory_id: UUID, feedback: QualityFeedback) -> Memory:
        """
        Re-score a memory from user feedback.

        Raises:
            NotFoundError: if the memory does not exist
        """
        repo = await self._get_repo()
        memory = await repo.get_by_id(memory_id)
        if memory is None:
            raise NotFoundError("memory", memory_id)

        if feedback.quality_score is not None:
            score = feedback.quality_score
        else:
            score = memory.quality_score
            if feedback.user_satisfaction is not None:
                score = (score + feedback.user_satisfaction) / 2
            if feedback.corrections:
                score *= self.policy.correction_penalty

        previous = memory.quality_score
        memory.quality_score = clamp(score)
        memory.metadata.feedback_collected = True
        if feedback.user_satisfaction is not None:
            memory.metadata.user_satisfaction = feedback.user_satisfaction
        memory.updated_at = self._clock()

        await self._save(memory)

        logger.info(
            "Memory quality updated",
            memory_id=str(memory_id),
            previous=round(previous, 3),
            quality_score=round(memory.quality_score, 3),
        )
        return memory

    # =========================================================================
    # Expiry sweep
    # =========================================================================

    async def delete_expired(self) -> int:
        """Physically delete every memory past its expiry."""
        repo = await self._get_repo()
        return await repo.delete_expired(self._clock())
