"""
Grounding Service

Runs the grounding pipeline for one learner message as four named stages:
context building, knowledge integration, memory processing and
optimization. Each stage is bounded by a deadline and a failed stage
never fails the request.
"""

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

import structlog

from grounding.clock import Clock, utc_now
from grounding.config import Settings, get_settings
from grounding.engine.context_builder import ContextBuilder
from grounding.engine.knowledge_base import KnowledgeBase
from grounding.engine.memory_store import ConversationMemoryStore
from grounding.engine.optimizer import ContextOptimizer
from grounding.engine.profile import default_profile
from grounding.errors import OptimizationFailure
from grounding.models.context import ContextBuildRequest, EnhancedContext
from grounding.models.grounding import (
    GroundingMetrics,
    GroundingRequest,
    GroundingResult,
    KnowledgeSummary,
    MemorySummary,
    ProcessingStage,
    StageName,
    StageStatus,
)
from grounding.models.optimization import (
    OptimizationRequest,
    OptimizationResult,
    OptimizationStrategy,
)
from grounding.models.requests import (
    KnowledgeSearchFilters,
    KnowledgeSearchResult,
    MemoryOptimizationRequest,
    MemorySearchRequest,
    OptimizationType,
)
from grounding.storage.cache import BaseCache

logger = structlog.get_logger(__name__)

STAGE_WINDOW = 100
KNOWLEDGE_MIN_RELIABILITY = 0.7
KNOWLEDGE_RESULT_LIMIT = 10
VERIFIED_FACT_CONFIDENCE = 0.8
MEMORY_MIN_RELEVANCE = 0.5
MEMORY_RESULT_LIMIT = 20


class GroundingService:
    """
    Orchestrates the grounding components.

    Pipeline:
    1. Build the EnhancedContext for the learner
    2. Search the knowledge base for the message
    3. Search the learner's memories for the conversation
    4. Optimize the context under the requested token limit
    """

    def __init__(
        self,
        settings: Settings | None = None,
        context_builder: ContextBuilder | None = None,
        knowledge_base: KnowledgeBase | None = None,
        memory_store: ConversationMemoryStore | None = None,
        optimizer: ContextOptimizer | None = None,
        cache: BaseCache | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or get_settings()
        clock = clock or utc_now

        self.knowledge_base = knowledge_base or KnowledgeBase(self.settings, cache=cache, clock=clock)
        self.memory_store = memory_store or ConversationMemoryStore(self.settings, cache=cache, clock=clock)
        self.context_builder = context_builder or ContextBuilder(
            self.settings,
            knowledge_base=self.knowledge_base,
            memory_store=self.memory_store,
            cache=cache,
            clock=clock,
        )
        self.optimizer = optimizer or ContextOptimizer(self.settings, cache=cache, clock=clock)

        self.stage_timeout = self.settings.grounding_stage_timeout_seconds
        self._init_metrics()

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def process(self, request: GroundingRequest) -> GroundingResult:
        """Run all four stages for one message."""
        started = time.perf_counter()
        request_id = uuid4()
        result = GroundingResult(request_id=request_id)

        logger.info(
            "Grounding started",
            request_id=str(request_id),
            user_id=str(request.user_id),
            level=request.level.value,
            max_tokens=request.max_tokens,
        )

        # Stage 1: context building
        context_stage, context = await self._run_stage(
            StageName.CONTEXT_BUILDING,
            self.settings.grounding_enable_context_building,
            lambda: self.context_builder.build_context(
                ContextBuildRequest(
                    user_id=request.user_id,
                    level=request.level,
                    query=request.message,
                    token_limit=request.max_tokens,
                    include_memories=request.include_memory,
                    include_knowledge=request.include_knowledge,
                    subjects=request.subjects,
                )
            ),
            lambda ctx: {
                "tokens": ctx.token_usage.total,
                "knowledge_entries": len(ctx.knowledge_base),
                "conversation_summaries": len(ctx.conversation_history),
                "external_sources": len(ctx.external_sources),
            },
        )
        if context is None:
            context = self._fallback_context(request)
        result.stages.append(context_stage)

        # Stage 2: knowledge integration
        knowledge_stage, knowledge = await self._run_stage(
            StageName.KNOWLEDGE_INTEGRATION,
            self.settings.grounding_enable_knowledge_base and request.include_knowledge,
            lambda: self._integrate_knowledge(request.message, request.subjects),
            lambda summary: {
                "sources_found": summary.sources_found,
                "facts_verified": summary.facts_verified,
            },
        )
        result.knowledge = knowledge or KnowledgeSummary()
        result.stages.append(knowledge_stage)

        # Stage 3: memory processing
        memory_stage, memory = await self._run_stage(
            StageName.MEMORY_PROCESSING,
            self.settings.grounding_enable_memory and request.include_memory,
            lambda: self._process_memories(request.user_id, request.conversation_id),
            lambda summary: {
                "memories_found": summary.memories_found,
                "average_relevance": round(summary.average_relevance, 3),
            },
        )
        result.memory = memory or MemorySummary()
        result.stages.append(memory_stage)

        # Stage 4: optimization
        optimization_stage, optimization = await self._run_stage(
            StageName.OPTIMIZATION,
            self.settings.grounding_enable_optimization and request.include_optimization,
            lambda: self._optimize(context, request.max_tokens, request.strategy),
            lambda opt: {
                "strategy": opt.strategy.value if opt.strategy else None,
                "reduction": round(opt.token_reduction.reduction_ratio, 3),
                "quality_score": round(opt.quality_score, 3),
            },
        )
        result.optimization = optimization
        result.stages.append(optimization_stage)

        result.context = optimization.optimized_context if optimization else context
        result.recommendations = self._recommendations(result)
        result.warnings = [
            f"{stage.stage.value} stage failed: {stage.error}"
            for stage in result.stages
            if stage.status == StageStatus.FAILED
        ]
        result.processing_time_ms = (time.perf_counter() - started) * 1000

        success = not result.warnings
        self._update_metrics(result, success)

        logger.info(
            "Grounding completed",
            request_id=str(request_id),
            processing_time_ms=round(result.processing_time_ms, 1),
            failed_stages=len(result.warnings),
        )
        return result

    async def _run_stage(
        self,
        name: StageName,
        enabled: bool,
        operation: Callable[[], Awaitable[Any]],
        describe: Callable[[Any], dict[str, Any]],
    ) -> tuple[ProcessingStage, Any]:
        if not enabled:
            return ProcessingStage(stage=name, status=StageStatus.SKIPPED), None

        started = time.perf_counter()
        try:
            value = await asyncio.wait_for(operation(), timeout=self.stage_timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {self.stage_timeout}s"
        except Exception as e:
            error = str(e) or type(e).__name__
        else:
            return (
                ProcessingStage(
                    stage=name,
                    status=StageStatus.COMPLETED,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    details=describe(value),
                ),
                value,
            )

        logger.error("Grounding stage failed", stage=name.value, error=error)
        return (
            ProcessingStage(
                stage=name,
                status=StageStatus.FAILED,
                duration_ms=(time.perf_counter() - started) * 1000,
                error=error,
            ),
            None,
        )

    def _fallback_context(self, request: GroundingRequest) -> EnhancedContext:
        return EnhancedContext(
            student_profile=default_profile(request.user_id),
            compression_level=request.level,
        )

    async def _integrate_knowledge(self, message: str, subjects: list[str]) -> KnowledgeSummary:
        results = await self.knowledge_base.search_knowledge(
            message,
            KnowledgeSearchFilters(
                subjects=subjects,
                min_reliability=KNOWLEDGE_MIN_RELIABILITY,
                limit=KNOWLEDGE_RESULT_LIMIT,
            ),
        )
        return KnowledgeSummary(
            sources_found=len({r.entry.source_id for r in results}),
            facts_verified=sum(1 for r in results if r.entry.confidence > VERIFIED_FACT_CONFIDENCE),
            results=results,
        )

    async def _process_memories(
        self,
        user_id: UUID,
        conversation_id: str | None,
        max_results: int = MEMORY_RESULT_LIMIT,
        min_relevance_score: float = MEMORY_MIN_RELEVANCE,
    ) -> MemorySummary:
        results = await self.memory_store.search_memories(
            MemorySearchRequest(
                user_id=user_id,
                conversation_id=conversation_id,
                max_results=max_results,
                min_relevance_score=min_relevance_score,
            )
        )
        average = sum(r.relevance_score for r in results) / len(results) if results else 0.0
        return MemorySummary(
            memories_found=len(results),
            average_relevance=average,
            cross_conversation_links=sum(
                1 for r in results if r.memory.metadata.cross_conversation_linked
            ),
            memories=results,
        )

    async def _optimize(
        self,
        context: EnhancedContext,
        max_tokens: int,
        strategy: OptimizationStrategy,
    ) -> OptimizationResult:
        result = await self.optimizer.optimize_context(
            OptimizationRequest(context=context, token_limit=max_tokens, strategy=strategy)
        )
        if result.fallback:
            raise OptimizationFailure("optimizer returned the original context")
        return result

    def _recommendations(self, result: GroundingResult) -> list[str]:
        recommendations = []

        context_stage = result.stage(StageName.CONTEXT_BUILDING)
        if context_stage and context_stage.status == StageStatus.FAILED:
            recommendations.append("Context building failed - using fallback context")

        knowledge_stage = result.stage(StageName.KNOWLEDGE_INTEGRATION)
        if (
            knowledge_stage
            and knowledge_stage.status == StageStatus.COMPLETED
            and result.knowledge.sources_found < 3
        ):
            recommendations.append("Consider expanding knowledge base search for better fact coverage")

        memory_stage = result.stage(StageName.MEMORY_PROCESSING)
        if (
            memory_stage
            and memory_stage.status == StageStatus.COMPLETED
            and result.memory.average_relevance < 0.6
        ):
            recommendations.append("Improve memory relevance scoring for better conversation continuity")

        if result.optimization and result.optimization.token_reduction.reduction_ratio > 0.5:
            recommendations.append("High token reduction may impact context quality")

        return recommendations

    # =========================================================================
    # Single-stage entry points
    # =========================================================================

    async def build_context_only(self, request: ContextBuildRequest) -> EnhancedContext:
        """Build a context without the rest of the pipeline."""
        if not self.settings.grounding_enable_context_building:
            return EnhancedContext(student_profile=default_profile(request.user_id), compression_level=request.level)
        return await self.context_builder.build_context(request)

    async def search_knowledge_only(
        self,
        query: str,
        filters: KnowledgeSearchFilters | None = None,
    ) -> list[KnowledgeSearchResult]:
        if not self.settings.grounding_enable_knowledge_base:
            return []
        return await self.knowledge_base.search_knowledge(query, filters)

    async def process_memory_only(
        self,
        user_id: UUID,
        conversation_id: str | None = None,
        max_results: int = MEMORY_RESULT_LIMIT,
        min_relevance_score: float = MEMORY_MIN_RELEVANCE,
        include_optimization: bool = False,
    ) -> MemorySummary:
        """
        Search a learner's memories and optionally run a linking pass.

        The linking pass is best effort; its failure is logged and the
        search summary is still returned.
        """
        if not self.settings.grounding_enable_memory:
            return MemorySummary()

        summary = await self._process_memories(user_id, conversation_id, max_results, min_relevance_score)

        if include_optimization and summary.memories:
            try:
                summary.optimization = await self.memory_store.optimize_memories(
                    MemoryOptimizationRequest(
                        user_id=user_id,
                        conversation_id=conversation_id,
                        optimization_type=OptimizationType.LINKING,
                    )
                )
            except Exception as e:
                logger.warning("Memory optimization failed", user_id=str(user_id), error=str(e))

        return summary

    async def optimize_context_only(
        self,
        context: EnhancedContext,
        max_tokens: int,
        strategy: OptimizationStrategy = OptimizationStrategy.BALANCED,
    ) -> OptimizationResult:
        return await self.optimizer.optimize_context(
            OptimizationRequest(context=context, token_limit=max_tokens, strategy=strategy)
        )

    # =========================================================================
    # Metrics
    # =========================================================================

    def _init_metrics(self) -> None:
        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._average_processing_time = 0.0
        self._stage_durations: dict[StageName, deque[float]] = {
            name: deque(maxlen=STAGE_WINDOW) for name in StageName
        }

    def _update_metrics(self, result: GroundingResult, success: bool) -> None:
        self._total_requests += 1
        if success:
            self._successful_requests += 1
        else:
            self._failed_requests += 1

        n = self._total_requests
        self._average_processing_time += (result.processing_time_ms - self._average_processing_time) / n

        for stage in result.stages:
            if stage.status != StageStatus.SKIPPED:
                self._stage_durations[stage.stage].append(stage.duration_ms)

    def get_metrics(self) -> GroundingMetrics:
        total = self._total_requests
        return GroundingMetrics(
            total_requests=total,
            successful_requests=self._successful_requests,
            failed_requests=self._failed_requests,
            error_rate=self._failed_requests / total if total else 0.0,
            average_processing_time_ms=self._average_processing_time,
            stage_durations={name: list(window) for name, window in self._stage_durations.items()},
        )

    def reset_metrics(self) -> None:
        self._init_metrics()
        logger.info("Grounding metrics reset")
