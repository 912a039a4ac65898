"""
Context Optimizer

Forces an assembled EnhancedContext under a token limit by allocating a
per-component token budget and compressing components according to an
optimization strategy. Optimization never raises: any internal failure
yields the original context with a fallback recommendation.
"""

import json
import math
from typing import Any, Callable

import structlog

from grounding.clock import Clock, utc_now
from grounding.config import Settings, get_settings
from grounding.engine.context_builder import token_usage
from grounding.engine.scoring import clamp
from grounding.engine.text import compress_sentences, estimate_tokens, truncate
from grounding.errors import OptimizationFailure, ValidationError
from grounding.models.context import EnhancedContext
from grounding.models.knowledge import EducationalSource, KnowledgeEntry
from grounding.models.optimization import (
    ContextComponent,
    OptimizationRequest,
    OptimizationResult,
    OptimizationStrategy,
    OptimizationTradeoff,
    PreservedInformation,
    TokenBudget,
    TokenReduction,
)
from grounding.models.profile import ConversationSummary, UltraCompressedProfile
from grounding.storage.cache import BaseCache, get_cache

logger = structlog.get_logger(__name__)

# Share of the token limit per component
BUDGET_SHARES: dict[ContextComponent, float] = {
    ContextComponent.PROFILE: 0.15,
    ContextComponent.KNOWLEDGE: 0.40,
    ContextComponent.MEMORY: 0.20,
    ContextComponent.SOURCES: 0.15,
    ContextComponent.HISTORY: 0.10,
}

STRATEGY_FACTORS: dict[OptimizationStrategy, float] = {
    OptimizationStrategy.QUALITY_PRESERVING: 1.1,
    OptimizationStrategy.SIZE_REDUCING: 0.8,
}

BALANCED_COMPRESSION: dict[ContextComponent, float] = {
    ContextComponent.PROFILE: 0.1,
    ContextComponent.KNOWLEDGE: 0.4,
    ContextComponent.MEMORY: 0.3,
    ContextComponent.SOURCES: 0.5,
    ContextComponent.HISTORY: 0.4,
}

# Fraction of knowledge entries kept per strategy
KNOWLEDGE_KEEP: dict[OptimizationStrategy, float] = {
    OptimizationStrategy.QUALITY_PRESERVING: 0.7,
    OptimizationStrategy.SIZE_REDUCING: 0.3,
    OptimizationStrategy.BALANCED: 0.5,
    OptimizationStrategy.PERFORMANCE_ORIENTED: 0.6,
}

QUALITY_FLOORS: dict[OptimizationStrategy, float] = {
    OptimizationStrategy.QUALITY_PRESERVING: 0.8,
    OptimizationStrategy.SIZE_REDUCING: 0.6,
}

QUALITY_IMPACT: dict[ContextComponent, float] = {
    ContextComponent.PROFILE: 0.2,
    ContextComponent.KNOWLEDGE: 0.5,
    ContextComponent.HISTORY: 0.4,
    ContextComponent.SOURCES: 0.3,
}

# Errors raised by a structurally broken context while it is processed
_PROCESSING_ERRORS = (AttributeError, TypeError, ValueError, KeyError, ZeroDivisionError)


class ContextOptimizer:
    """
    Strategy-driven context compression.

    Results are cached for 15 minutes, keyed by the context shape, the
    token limit, the strategy and the preserve flags.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        cache: BaseCache | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or get_settings()
        self._cache = cache
        self._clock = clock or utc_now

    async def _get_cache(self) -> BaseCache:
        if self._cache is None:
            self._cache = await get_cache()
        return self._cache

    # =========================================================================
    # Budget
    # =========================================================================

    def allocate_token_budget(
        self,
        token_limit: int,
        strategy: OptimizationStrategy | None = None,
    ) -> TokenBudget:
        """Split a token limit across context components."""
        if token_limit <= 0:
            raise ValidationError("token_limit must be positive")

        factor = STRATEGY_FACTORS.get(strategy, 1.0) if strategy else 1.0
        allocated = {
            component: math.floor(share * token_limit * factor)
            for component, share in BUDGET_SHARES.items()
        }
        allocated_sum = sum(allocated.values())

        return TokenBudget(
            total=token_limit,
            allocated=allocated,
            remaining=max(0, token_limit - allocated_sum),
            efficiency=allocated_sum / token_limit,
        )

    # =========================================================================
    # Optimize
    # =========================================================================

    async def optimize_context(self, request: OptimizationRequest) -> OptimizationResult:
        """Optimize a context. Never raises; failures return the input."""
        try:
            return await self._optimize(request)
        except OptimizationFailure as e:
            logger.error(
                "Context optimization failed, using original context",
                token_limit=request.token_limit,
                strategy=request.strategy.value if request.strategy else None,
                error=str(e),
            )
            return self._fallback(request)

    def _validate(self, request: OptimizationRequest) -> None:
        errors = []
        if request.context is None:
            errors.append("Context is required")
        if request.token_limit < self.settings.optimizer_min_token_limit:
            errors.append(f"Token limit must be at least {self.settings.optimizer_min_token_limit}")
        if request.strategy is None:
            errors.append("Optimization strategy is required")
        if errors:
            raise OptimizationFailure(f"Invalid optimization request: {', '.join(errors)}")

    async def _optimize(self, request: OptimizationRequest) -> OptimizationResult:
        self._validate(request)

        try:
            key_signature = self._signature(request)
        except _PROCESSING_ERRORS as e:
            raise OptimizationFailure(f"Malformed context: {e}") from e

        cache = await self._get_cache()
        key = cache.optimization_key(key_signature)
        cached = await cache.get_json(key)
        if cached is not None:
            logger.debug("Returning cached optimization result", strategy=request.strategy.value)
            return OptimizationResult.model_validate(cached)

        try:
            result = self._run(request)
        except _PROCESSING_ERRORS as e:
            raise OptimizationFailure(str(e)) from e

        await cache.set_json(key, result.model_dump(mode="json"), ttl=self.settings.cache_ttl_optimization)

        logger.info(
            "Context optimization completed",
            strategy=request.strategy.value,
            token_limit=request.token_limit,
            original_tokens=result.token_reduction.original_tokens,
            optimized_tokens=result.token_reduction.optimized_tokens,
            quality_score=round(result.quality_score, 3),
        )
        return result

    def _run(self, request: OptimizationRequest) -> OptimizationResult:
        original = request.context
        strategy = request.strategy
        original_usage = token_usage(original, request.token_limit)
        budget = self.allocate_token_budget(request.token_limit, strategy)
        plan = _Plan(original, request, budget)

        if strategy == OptimizationStrategy.QUALITY_PRESERVING:
            plan.compress_if_over(ContextComponent.PROFILE, "Token budget constraint")
            if request.educational_priority:
                plan.compress_if_over(ContextComponent.KNOWLEDGE, "Educational content compression")
            plan.compress_if_over(ContextComponent.HISTORY, "History compression")

        elif strategy == OptimizationStrategy.SIZE_REDUCING:
            for component in (ContextComponent.KNOWLEDGE, ContextComponent.HISTORY, ContextComponent.SOURCES):
                plan.compress_if_over(component, "Aggressive size reduction")

        elif strategy == OptimizationStrategy.BALANCED:
            for component, factor in BALANCED_COMPRESSION.items():
                size = plan.size(component)
                if size > 0:
                    plan.compress(component, size * (1 - factor), "Balanced compression")

        elif strategy == OptimizationStrategy.PERFORMANCE_ORIENTED:
            plan.compress_if_over(ContextComponent.KNOWLEDGE, "Performance optimization")

        if request.hard_limit:
            plan.enforce_limit(request.token_limit)

        optimized = plan.finish(self._clock())
        final_usage = optimized.token_usage

        original_tokens = original_usage.total
        reduction = 1 - final_usage.total / original_tokens if original_tokens else 0.0
        quality = 1.0 - max(0.0, reduction) * 0.3
        quality = max(quality, QUALITY_FLOORS.get(strategy, 0.0))
        quality = clamp(quality)

        return OptimizationResult(
            optimized_context=optimized,
            token_reduction=TokenReduction(
                original_tokens=original_tokens,
                optimized_tokens=final_usage.total,
                reduction_ratio=reduction,
            ),
            quality_score=quality,
            compression_ratio=final_usage.total / original_tokens if original_tokens else 1.0,
            strategy=strategy,
            preserved_information=preserved_information(optimized),
            tradeoffs=plan.tradeoffs,
            recommendations=self._recommendations(optimized, request, plan.tradeoffs, quality),
        )

    def _recommendations(
        self,
        context: EnhancedContext,
        request: OptimizationRequest,
        tradeoffs: list[OptimizationTradeoff],
        quality: float,
    ) -> list[str]:
        recommendations = []
        total = context.token_usage.total

        if total > request.token_limit:
            recommendations.append("Context still exceeds the token limit - enable hard_limit to enforce it")
        elif total > request.token_limit * 0.9:
            recommendations.append("Consider further optimization to leave buffer space")
        if len(tradeoffs) > 2:
            recommendations.append("Multiple components were optimized - consider reviewing quality impact")
        if request.strategy == OptimizationStrategy.SIZE_REDUCING and quality < 0.7:
            recommendations.append(
                "Quality may have been significantly impacted - consider quality-preserving strategy"
            )
        if quality < request.minimum_quality:
            recommendations.append(
                f"Quality {quality:.2f} is below the requested minimum {request.minimum_quality:.2f}"
            )
        if not context.knowledge_base:
            recommendations.append("No educational content available - consider expanding knowledge base")
        return recommendations

    def _fallback(self, request: OptimizationRequest) -> OptimizationResult:
        context = request.context
        try:
            total = token_usage(context, max(request.token_limit, 0)).total
            preserved = preserved_information(context)
        except _PROCESSING_ERRORS:
            total = 0
            preserved = PreservedInformation()

        return OptimizationResult(
            optimized_context=context,
            token_reduction=TokenReduction(original_tokens=total, optimized_tokens=total, reduction_ratio=0.0),
            quality_score=1.0,
            compression_ratio=1.0,
            strategy=request.strategy,
            preserved_information=preserved,
            recommendations=["Optimization failed, using original context"],
            fallback=True,
        )

    @staticmethod
    def _signature(request: OptimizationRequest) -> str:
        context = request.context
        shape = {
            "user": str(context.student_profile.user_id),
            "profile": len(context.student_profile.model_dump_json()),
            "knowledge": [str(e.id) for e in context.knowledge_base],
            "history": [s.conversation_id for s in context.conversation_history],
            "sources": [str(s.id) for s in context.external_sources],
            "level": context.compression_level.value,
            "limit": request.token_limit,
            "strategy": request.strategy.value,
            "preserve": sorted(c.value for c in request.preserve_components),
            "educational_priority": request.educational_priority,
            "minimum_quality": request.minimum_quality,
            "hard_limit": request.hard_limit,
        }
        return json.dumps(shape, sort_keys=True)


class _Plan:
    """Working copy of a context being compressed, with its tradeoff log."""

    def __init__(
        self,
        context: EnhancedContext,
        request: OptimizationRequest,
        budget: TokenBudget,
    ):
        self.request = request
        self.budget = budget
        self.profile: UltraCompressedProfile = context.student_profile
        self.knowledge: list[KnowledgeEntry] = list(context.knowledge_base)
        self.history: list[ConversationSummary] = list(context.conversation_history)
        self.sources: list[EducationalSource] = list(context.external_sources)
        self.context = context
        self.tradeoffs: list[OptimizationTradeoff] = []

    def size(self, component: ContextComponent) -> int:
        if component == ContextComponent.PROFILE:
            return profile_tokens(self.profile)
        if component == ContextComponent.KNOWLEDGE:
            return sum(estimate_tokens(e.content) for e in self.knowledge)
        if component == ContextComponent.HISTORY:
            return sum(estimate_tokens(s.summary) for s in self.history)
        if component == ContextComponent.SOURCES:
            return sum(estimate_tokens(s.content) for s in self.sources)
        return 0

    def compress_if_over(self, component: ContextComponent, reason: str) -> None:
        allocated = self.budget.allocated[component]
        if self.size(component) > allocated:
            self.compress(component, allocated, reason)

    def compress(self, component: ContextComponent, target: float, reason: str) -> None:
        if component in self.request.preserve_components:
            return
        before = self.size(component)
        if before <= target or component == ContextComponent.MEMORY:
            return

        if component == ContextComponent.PROFILE:
            self.profile = compress_profile(self.profile)
        elif component == ContextComponent.KNOWLEDGE:
            self.knowledge = compress_knowledge(self.knowledge, self.request.strategy)
        elif component == ContextComponent.HISTORY:
            self.history = compress_history(self.history)
        elif component == ContextComponent.SOURCES:
            self.sources = compress_sources(self.sources)

        self._record(component, before, reason)

    def enforce_limit(self, token_limit: int) -> None:
        """Drop lowest-ranked entries until the context fits."""
        droppable: list[tuple[ContextComponent, str, Callable[[Any], float]]] = [
            (ContextComponent.SOURCES, "sources", source_rank),
            (ContextComponent.HISTORY, "history", lambda s: s.quality_score),
            (ContextComponent.KNOWLEDGE, "knowledge", knowledge_rank),
        ]
        for component, attr, rank in droppable:
            if component in self.request.preserve_components:
                continue
            before = self.size(component)
            items = sorted(getattr(self, attr), key=rank, reverse=True)
            while items and self._total() > token_limit:
                items.pop()
                setattr(self, attr, items)
            if self.size(component) < before:
                self._record(component, before, "Hard token limit")
            if self._total() <= token_limit:
                return

    def _total(self) -> int:
        return sum(
            self.size(c) for c in (
                ContextComponent.PROFILE,
                ContextComponent.KNOWLEDGE,
                ContextComponent.HISTORY,
                ContextComponent.SOURCES,
            )
        )

    def _record(self, component: ContextComponent, before: int, reason: str) -> None:
        after = self.size(component)
        loss = clamp((before - after) / before) if before else 0.0
        self.tradeoffs.append(
            OptimizationTradeoff(
                component=component,
                original_size=before,
                optimized_size=after,
                information_loss=loss,
                quality_impact=clamp(loss * QUALITY_IMPACT.get(component, 0.3)),
                reason=reason,
            )
        )

    def finish(self, now) -> EnhancedContext:
        kept = {f"fact_{e.id}" for e in self.knowledge}
        markers = {f"confidence_{e.id}" for e in self.knowledge}
        optimized = self.context.model_copy(
            update={
                "student_profile": self.profile,
                "knowledge_base": self.knowledge,
                "conversation_history": self.history,
                "external_sources": self.sources,
                "fact_check_points": [p for p in self.context.fact_check_points if p.id in kept],
                "confidence_markers": [m for m in self.context.confidence_markers if m.id in markers],
                "last_optimized": now,
            }
        )
        optimized.token_usage = token_usage(optimized, self.request.token_limit)
        return optimized


# =============================================================================
# Component compression
# =============================================================================

def profile_tokens(profile: UltraCompressedProfile) -> int:
    return estimate_tokens(profile.model_dump_json(exclude_none=True))


def knowledge_rank(entry: KnowledgeEntry) -> float:
    return entry.educational_value * 0.6 + entry.confidence * 0.4


def source_rank(source: EducationalSource) -> float:
    return source.educational_relevance * 0.6 + source.reliability * 0.4


def compress_profile(profile: UltraCompressedProfile) -> UltraCompressedProfile:
    """Drop verbose metadata and cap recent topics at 5."""
    metadata = profile.compressed_metadata.model_copy(
        update={"average_session_time": None, "attention_span": None}
    )
    return profile.model_copy(
        update={"compressed_metadata": metadata, "recent_topics": profile.recent_topics[:5]}
    )


def compress_knowledge(
    entries: list[KnowledgeEntry],
    strategy: OptimizationStrategy | None,
) -> list[KnowledgeEntry]:
    if not entries:
        return entries
    keep = max(1, math.floor(len(entries) * KNOWLEDGE_KEEP.get(strategy, 0.5)))
    ranked = sorted(entries, key=knowledge_rank, reverse=True)[:keep]
    return [
        e.model_copy(update={
            "content": compress_sentences(e.content, 0.7),
            "related_concepts": e.related_concepts[:3],
        })
        for e in ranked
    ]


def compress_history(history: list[ConversationSummary]) -> list[ConversationSummary]:
    if not history:
        return history
    newest = max(s.created_at for s in history)

    def rank(summary: ConversationSummary) -> float:
        age_days = (newest - summary.created_at).total_seconds() / 86400
        return summary.quality_score * 0.7 + (1 / (1 + age_days)) * 0.3

    keep = max(1, math.floor(len(history) * 0.6))
    ranked = sorted(history, key=rank, reverse=True)[:keep]
    return [
        s.model_copy(update={
            "summary": compress_sentences(s.summary, 0.6),
            "key_topics": s.key_topics[:3],
        })
        for s in ranked
    ]


def compress_sources(sources: list[EducationalSource]) -> list[EducationalSource]:
    if not sources:
        return sources
    keep = max(1, math.floor(len(sources) * 0.5))
    ranked = sorted(sources, key=source_rank, reverse=True)[:keep]
    return [
        s.model_copy(update={
            "content": compress_sentences(s.content, 0.8),
            "topics": s.topics[:2],
        })
        for s in ranked
    ]


def preserved_information(context: EnhancedContext) -> PreservedInformation:
    profile = context.student_profile
    gaps = []
    if len(context.knowledge_base) < 5:
        gaps.append("Limited knowledge base coverage")
    if profile.weak_subjects:
        gaps.append(f"Weak subjects: {', '.join(profile.weak_subjects)}")

    preferences = [
        f"learning_style: {profile.learning_style.type.value}",
        f"difficulty: {profile.preferred_complexity.current}",
    ]
    if profile.strong_subjects:
        preferences.append(f"strong_subjects: {', '.join(profile.strong_subjects)}")

    return PreservedInformation(
        critical_facts=[
            truncate(e.content, 100) for e in context.knowledge_base if e.educational_value > 0.8
        ],
        learning_objectives=list(profile.learning_objectives),
        key_preferences=preferences,
        recent_progress=profile.last_session_summary,
        knowledge_gaps=gaps,
    )
