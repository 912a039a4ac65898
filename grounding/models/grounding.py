"""
Grounding Service Models

Request, per-stage report, result and in-process metrics for the
four-stage grounding pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from grounding.clock import utc_now
from grounding.models.context import ContextLevel, EnhancedContext
from grounding.models.optimization import OptimizationResult, OptimizationStrategy
from grounding.models.requests import (
    KnowledgeSearchResult,
    MemoryOptimizationResult,
    MemorySearchResult,
)


class StageName(str, Enum):
    CONTEXT_BUILDING = "context_building"
    KNOWLEDGE_INTEGRATION = "knowledge_integration"
    MEMORY_PROCESSING = "memory_processing"
    OPTIMIZATION = "optimization"


class StageStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProcessingStage(BaseModel):
    stage: StageName
    status: StageStatus
    duration_ms: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class GroundingRequest(BaseModel):
    """One learner message to ground."""

    user_id: UUID
    message: str = Field(..., min_length=1)
    conversation_id: str | None = None
    level: ContextLevel = ContextLevel.SELECTIVE
    max_tokens: int = Field(default=2048, ge=100)
    strategy: OptimizationStrategy = OptimizationStrategy.BALANCED
    include_memory: bool = True
    include_knowledge: bool = True
    include_optimization: bool = True
    subjects: list[str] = Field(default_factory=list)


class KnowledgeSummary(BaseModel):
    sources_found: int = 0
    facts_verified: int = 0
    results: list[KnowledgeSearchResult] = Field(default_factory=list)


class MemorySummary(BaseModel):
    memories_found: int = 0
    average_relevance: float = 0.0
    cross_conversation_links: int = 0
    memories: list[MemorySearchResult] = Field(default_factory=list)
    optimization: MemoryOptimizationResult | None = None


class GroundingResult(BaseModel):
    request_id: UUID = Field(default_factory=uuid4)
    context: EnhancedContext | None = None
    optimization: OptimizationResult | None = None
    knowledge: KnowledgeSummary = Field(default_factory=KnowledgeSummary)
    memory: MemorySummary = Field(default_factory=MemorySummary)
    processing_time_ms: float = 0.0
    recommendations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    stages: list[ProcessingStage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    def stage(self, name: StageName) -> ProcessingStage | None:
        for stage in self.stages:
            if stage.stage == name:
                return stage
        return None


class GroundingMetrics(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    error_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    stage_durations: dict[StageName, list[float]] = Field(default_factory=dict)
