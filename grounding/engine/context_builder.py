"""
Context Builder

Assembles the EnhancedContext handed to the language model: a compressed
student profile, relevant verified knowledge, prior conversation summaries,
external sources, fact-check points and confidence markers, with token
accounting and a fallback compression pass when over the limit.
"""

import math
from collections import defaultdict
from datetime import timedelta
from typing import Any, Callable
from uuid import UUID

import structlog

from grounding.clock import Clock, utc_now
from grounding.config import Settings, get_settings
from grounding.engine.knowledge_base import KnowledgeBase
from grounding.engine.memory_store import ConversationMemoryStore
from grounding.engine.profile import default_profile, derive_profile
from grounding.engine.text import compress_sentences, estimate_tokens, truncate
from grounding.errors import GroundingError, StoreError
from grounding.models.context import (
    CONTEXT_LEVELS,
    ConfidenceMarker,
    ContextBuildRequest,
    ContextLevel,
    EnhancedContext,
    FactCheckPoint,
    TokenUsage,
)
from grounding.models.knowledge import (
    ContentType,
    EducationalSource,
    KnowledgeEntry,
    VerificationStatus,
)
from grounding.models.memory import Memory
from grounding.models.profile import ConversationSummary, StudyProgress, UltraCompressedProfile
from grounding.models.requests import (
    KnowledgeSearchFilters,
    MemorySearchRequest,
    SortField,
    SourceListRequest,
)
from grounding.storage.cache import BaseCache, get_cache
from grounding.storage.database import get_database
from grounding.storage.repositories.profile_repo import ProfileRepository

logger = structlog.get_logger(__name__)

KNOWLEDGE_MIN_RELIABILITY = 0.7
SOURCE_MIN_RELIABILITY = 0.8
FACT_CHECK_CONFIDENCE = 0.8
MAX_FACT_CHECK_POINTS = 10
CONFIDENCE_MARKER_VALUE = 0.7
MAX_CONFIDENCE_MARKERS = 5


class ContextBuilder:
    """
    Builds grounding contexts.

    Every sub-resource degrades to an empty list on failure, and the
    profile degrades to the default profile, so a context is always
    returned.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        knowledge_base: KnowledgeBase | None = None,
        memory_store: ConversationMemoryStore | None = None,
        profile_repo: ProfileRepository | None = None,
        cache: BaseCache | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or get_settings()
        self._knowledge_base = knowledge_base
        self._memory_store = memory_store
        self._profile_repo = profile_repo
        self._cache = cache
        self._clock = clock or utc_now

    async def _get_cache(self) -> BaseCache:
        if self._cache is None:
            self._cache = await get_cache()
        return self._cache

    async def _get_profile_repo(self) -> ProfileRepository:
        if self._profile_repo is None:
            self._profile_repo = ProfileRepository(await get_database())
        return self._profile_repo

    async def _get_knowledge_base(self) -> KnowledgeBase:
        if self._knowledge_base is None:
            self._knowledge_base = KnowledgeBase(
                settings=self.settings,
                cache=await self._get_cache(),
                clock=self._clock,
            )
        return self._knowledge_base

    async def _get_memory_store(self) -> ConversationMemoryStore:
        if self._memory_store is None:
            self._memory_store = ConversationMemoryStore(
                settings=self.settings,
                cache=await self._get_cache(),
                clock=self._clock,
            )
        return self._memory_store

    # =========================================================================
    # Build
    # =========================================================================

    async def build_context(self, request: ContextBuildRequest) -> EnhancedContext:
        """Assemble a grounding context for one learner and query."""
        token_limit = request.token_limit or self.settings.context_default_token_limit

        profile = await self.get_student_profile(request.user_id)
        if not request.include_progress:
            profile = profile.model_copy(update={"study_progress": StudyProgress()})

        knowledge = await self._relevant_knowledge(request) if request.include_knowledge else []
        history = await self._conversation_history(request)
        sources = await self._external_sources(request)

        context = EnhancedContext(
            student_profile=profile,
            knowledge_base=knowledge,
            conversation_history=history,
            external_sources=sources,
            fact_check_points=fact_check_points(knowledge),
            confidence_markers=confidence_markers(knowledge),
            compression_level=request.level,
            last_optimized=self._clock(),
        )
        context.token_usage = token_usage(context, token_limit)

        if context.token_usage.total > token_limit:
            original = context.token_usage.total
            context = self._fit_to_limit(context, token_limit, request.level)
            context.token_usage = token_usage(context, token_limit)
            logger.info(
                "Context compressed to token limit",
                user_id=str(request.user_id),
                token_limit=token_limit,
                original_tokens=original,
                compressed_tokens=context.token_usage.total,
            )

        logger.info(
            "Context built",
            user_id=str(request.user_id),
            level=request.level.value,
            knowledge=len(context.knowledge_base),
            history=len(context.conversation_history),
            sources=len(context.external_sources),
            tokens=context.token_usage.total,
        )
        return context

    # =========================================================================
    # Profile
    # =========================================================================

    async def get_student_profile(self, user_id: UUID) -> UltraCompressedProfile:
        """Cached profile derivation. Any failure yields the default profile."""
        cache = await self._get_cache()
        key = cache.profile_key(user_id)

        cached = await cache.get_json(key)
        if cached is not None:
            return UltraCompressedProfile.model_validate(cached)

        try:
            repo = await self._get_profile_repo()
            since = self._clock() - timedelta(days=self.settings.context_activity_window_days)
            preferences = await repo.get_preferences(user_id)
            gamification = await repo.get_gamification(user_id)
            sessions = await repo.list_study_sessions(
                user_id, since, limit=self.settings.context_activity_limit
            )
            profile = derive_profile(user_id, preferences, gamification, sessions)
        except (GroundingError, ValueError) as e:
            logger.warning("Profile derivation failed, using default", user_id=str(user_id), error=str(e))
            return default_profile(user_id)

        await cache.set_json(key, profile.model_dump(mode="json"), ttl=self.settings.cache_ttl_profile)
        return profile

    # =========================================================================
    # Sub-resources
    # =========================================================================

    async def _relevant_knowledge(self, request: ContextBuildRequest) -> list[KnowledgeEntry]:
        knowledge_base = await self._get_knowledge_base()
        filters = KnowledgeSearchFilters(
            subjects=request.subjects,
            topics=request.topics,
            verification_status=[VerificationStatus.VERIFIED],
            min_reliability=KNOWLEDGE_MIN_RELIABILITY,
            time_range=request.timeframe,
            limit=self.settings.context_max_knowledge_entries,
        )
        results = await knowledge_base.search_knowledge(request.query or "", filters)
        return [r.entry for r in results][: self.settings.context_max_knowledge_entries]

    async def _external_sources(self, request: ContextBuildRequest) -> list[EducationalSource]:
        knowledge_base = await self._get_knowledge_base()
        sources = await knowledge_base.list_sources(
            SourceListRequest(
                min_reliability=SOURCE_MIN_RELIABILITY,
                verification_status=[VerificationStatus.VERIFIED],
                topics=request.subjects,
                limit=self.settings.context_max_external_sources,
            )
        )
        return sources[: self.settings.context_max_external_sources]

    async def _conversation_history(self, request: ContextBuildRequest) -> list[ConversationSummary]:
        """Stored summaries, supplemented from the memory store."""
        max_summaries = self.settings.context_max_conversation_summaries
        start = request.timeframe.start if request.timeframe else None
        end = request.timeframe.end if request.timeframe else None

        try:
            repo = await self._get_profile_repo()
            summaries = await repo.list_conversation_summaries(
                request.user_id,
                limit=max_summaries,
                subjects=request.subjects,
                start=start,
                end=end,
            )
        except StoreError as e:
            logger.warning("Conversation summaries unavailable", user_id=str(request.user_id), error=str(e))
            summaries = []

        if request.include_memories and len(summaries) < max_summaries:
            memory_store = await self._get_memory_store()
            results = await memory_store.search_memories(
                MemorySearchRequest(
                    user_id=request.user_id,
                    time_range=request.timeframe,
                    max_results=self.settings.memory_max_search_results,
                    sort_by=SortField.DATE,
                )
            )
            known = {s.conversation_id for s in summaries}
            synthesized = summarize_memories([r.memory for r in results], exclude=known)
            summaries.extend(synthesized[: max_summaries - len(summaries)])

        return summaries[:max_summaries]

    # =========================================================================
    # Fallback compression
    # =========================================================================

    def _fit_to_limit(self, context: EnhancedContext, token_limit: int, level: ContextLevel) -> EnhancedContext:
        ratio = CONTEXT_LEVELS[level].compression_ratio
        usage = token_usage(context, token_limit)
        updates: dict[str, Any] = {}

        if usage.total > token_limit * 0.8:
            updates["knowledge_base"] = shrink(
                context.knowledge_base,
                tokens=usage.knowledge,
                target=token_limit * 0.3,
                rank=lambda e: e.educational_value,
                field="content",
                ratio=ratio,
            )
            context = context.model_copy(update=updates)
            usage = token_usage(context, token_limit)

        if usage.total > token_limit * 0.9:
            updates["conversation_history"] = shrink(
                context.conversation_history,
                tokens=usage.history,
                target=token_limit * 0.2,
                rank=lambda s: s.quality_score,
                field="summary",
                ratio=ratio * 0.8,
            )
            context = context.model_copy(update=updates)
            usage = token_usage(context, token_limit)

        if usage.total > token_limit:
            updates["external_sources"] = shrink(
                context.external_sources,
                tokens=usage.sources,
                target=token_limit * 0.1,
                rank=lambda s: s.educational_relevance,
                field="content",
                ratio=ratio * 0.6,
            )
            context = context.model_copy(update=updates)

        return context


# =============================================================================
# Helpers
# =============================================================================

def token_usage(context: EnhancedContext, token_limit: int) -> TokenUsage:
    """Estimated tokens per component at one token per four characters."""
    profile = estimate_tokens(context.student_profile.model_dump_json(exclude_none=True))
    knowledge = sum(estimate_tokens(e.content) for e in context.knowledge_base)
    history = sum(estimate_tokens(s.summary) for s in context.conversation_history)
    sources = sum(estimate_tokens(s.content) for s in context.external_sources)
    total = profile + knowledge + history + sources
    return TokenUsage(
        total=total,
        profile=profile,
        knowledge=knowledge,
        history=history,
        sources=sources,
        remaining=max(0, token_limit - total),
    )


def shrink(
    items: list,
    tokens: int,
    target: float,
    rank: Callable[[Any], float],
    field: str,
    ratio: float,
) -> list:
    """Keep the best-ranked share of items and trim their text."""
    if not items:
        return items
    fraction = min(1.0, target / tokens) if tokens > 0 else 1.0
    keep = max(1, math.floor(len(items) * fraction))
    ranked = sorted(items, key=rank, reverse=True)[:keep]
    return [
        item.model_copy(update={field: compress_sentences(getattr(item, field), ratio)})
        for item in ranked
    ]


def fact_check_points(entries: list[KnowledgeEntry]) -> list[FactCheckPoint]:
    points = []
    for entry in entries:
        if entry.content_type != ContentType.FACT or entry.confidence <= FACT_CHECK_CONFIDENCE:
            continue
        points.append(
            FactCheckPoint(
                id=f"fact_{entry.id}",
                fact=truncate(entry.content, 200),
                confidence=entry.confidence,
                sources=[str(entry.source_id)],
                verification_date=entry.last_verified,
                status=VerificationStatus.VERIFIED,
                educational_context=entry.subject,
            )
        )
        if len(points) >= MAX_FACT_CHECK_POINTS:
            break
    return points


def confidence_markers(entries: list[KnowledgeEntry]) -> list[ConfidenceMarker]:
    markers = []
    for entry in entries:
        if entry.educational_value <= CONFIDENCE_MARKER_VALUE:
            continue
        markers.append(
            ConfidenceMarker(
                id=f"confidence_{entry.id}",
                claim=truncate(entry.content, 150),
                confidence=entry.confidence,
                reasoning=f"High educational value ({entry.educational_value}) and verified source",
                evidence=[str(entry.source_id)],
                alternative_views=[f"Alternative perspective on {entry.subject}"] if entry.subject else [],
            )
        )
        if len(markers) >= MAX_CONFIDENCE_MARKERS:
            break
    return markers


def summarize_memories(memories: list[Memory], exclude: set[str] | None = None) -> list[ConversationSummary]:
    """One synthesized summary per conversation, most recent conversation first."""
    exclude = exclude or set()
    grouped: dict[str, list[Memory]] = defaultdict(list)
    for memory in memories:
        if memory.conversation_id and memory.conversation_id not in exclude:
            grouped[memory.conversation_id].append(memory)

    summaries = []
    for conversation_id, group in grouped.items():
        group.sort(key=lambda m: m.created_at)
        topics = [m.interaction_data.topic for m in group if m.interaction_data.topic]
        subjects = [m.interaction_data.subject for m in group if m.interaction_data.subject]
        objectives = [
            m.interaction_data.learning_objective for m in group
            if m.interaction_data.learning_objective
        ]
        summaries.append(
            ConversationSummary(
                conversation_id=conversation_id,
                summary="; ".join(truncate(m.interaction_data.content, 120) for m in group[:3]),
                key_topics=list(dict.fromkeys(topics)),
                learning_objectives=list(dict.fromkeys(objectives)),
                quality_score=sum(m.quality_score for m in group) / len(group),
                duration=(group[-1].created_at - group[0].created_at).total_seconds(),
                messages_count=len(group),
                subjects=list(dict.fromkeys(subjects)),
                created_at=group[-1].created_at,
            )
        )

    summaries.sort(key=lambda s: s.created_at, reverse=True)
    return summaries
