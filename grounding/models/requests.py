"""
Request and Response Schemas

Input/output contracts for the conversation memory store and the
knowledge base.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from grounding.models.knowledge import (
    ContentType,
    KnowledgeEntry,
    SourceType,
    VerificationStatus,
)
from grounding.models.memory import (
    LinkType,
    Memory,
    MemoryPriority,
    MemoryRetention,
    MemoryType,
)


class TimeRange(BaseModel):
    """Inclusive datetime window."""

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError("time range end must not precede start")
        return self

    @property
    def days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400


# =============================================================================
# Memory search
# =============================================================================

class SortField(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"
    QUALITY = "quality"
    PRIORITY = "priority"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class MemorySearchRequest(BaseModel):
    """Filtered, scored search over a user's memories."""

    user_id: UUID
    query: str | None = Field(default=None, description="Free-text query")
    conversation_id: str | None = None
    memory_types: list[MemoryType] = Field(default_factory=list)
    priorities: list[MemoryPriority] = Field(default_factory=list)
    retentions: list[MemoryRetention] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    time_range: TimeRange | None = None
    min_relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    include_expired: bool = False
    include_linked: bool = False
    max_results: int = Field(default=20, ge=1, le=100)
    sort_by: SortField = SortField.RELEVANCE
    sort_order: SortOrder = SortOrder.DESC


class SearchSnippet(BaseModel):
    field: str
    text: str
    highlighted: str


class MemorySearchResult(BaseModel):
    memory: Memory
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    match_reasons: list[str] = Field(default_factory=list)
    snippets: list[SearchSnippet] = Field(default_factory=list, max_length=3)
    context: str = ""


# =============================================================================
# Linking
# =============================================================================

class MemoryLinkRequest(BaseModel):
    source_memory_id: UUID
    target_memory_id: UUID
    link_type: LinkType
    bidirectional: bool = False
    strength: float = Field(default=1.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_distinct(self) -> "MemoryLinkRequest":
        if self.source_memory_id == self.target_memory_id:
            raise ValueError("a memory cannot be linked to itself")
        return self


# =============================================================================
# Optimization
# =============================================================================

class OptimizationType(str, Enum):
    CLEANUP = "cleanup"
    COMPRESSION = "compression"
    CONSOLIDATION = "consolidation"
    LINKING = "linking"


class MemoryOptimizationRequest(BaseModel):
    """Maintenance pass over a user's memories."""

    user_id: UUID
    conversation_id: str | None = None
    optimization_type: OptimizationType
    retention_policy: MemoryRetention | None = Field(
        default=None,
        description="Only consider memories with this retention",
    )
    target_size: int | None = Field(
        default=None,
        ge=0,
        description="Maximum number of memories to keep after cleanup",
    )
    quality_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_age: int | None = Field(default=None, ge=0, description="Maximum age in days")
    preserve_recent: bool = True
    preserve_high_priority: bool = True


class MemoryOptimizationResult(BaseModel):
    optimization_id: UUID
    optimization_type: OptimizationType
    memories_processed: int = 0
    memories_removed: int = 0
    memories_compressed: int = 0
    links_created: int = 0
    storage_saved: int = Field(default=0, description="Estimated bytes saved")
    quality_improvement: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time_ms: int = 0
    recommendations: list[str] = Field(default_factory=list)


# =============================================================================
# Analytics and feedback
# =============================================================================

class TopicStat(BaseModel):
    topic: str
    count: int
    average_quality: float = Field(..., ge=0.0, le=1.0)


class ProgressPoint(BaseModel):
    date: datetime
    topic: str | None = None
    quality_score: float = Field(..., ge=0.0, le=1.0)
    memory_type: MemoryType


class MemoryAnalytics(BaseModel):
    user_id: UUID
    total_memories: int = 0
    memories_by_type: dict[str, int] = Field(default_factory=dict)
    memories_by_priority: dict[str, int] = Field(default_factory=dict)
    memories_by_retention: dict[str, int] = Field(default_factory=dict)
    average_quality_score: float = 0.0
    average_relevance_score: float = 0.0
    top_topics: list[TopicStat] = Field(default_factory=list)
    learning_progress: list[ProgressPoint] = Field(default_factory=list)
    memory_growth_rate: float = Field(default=0.0, description="Memories per day")
    cross_conversation_links: int = 0
    knowledge_base_integrations: int = 0


class QualityFeedback(BaseModel):
    """Feedback used to re-score a memory."""

    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    user_satisfaction: float | None = Field(default=None, ge=0.0, le=1.0)
    corrections: list[str] = Field(default_factory=list)


# =============================================================================
# Knowledge search and validation
# =============================================================================

class KnowledgeSearchFilters(BaseModel):
    subjects: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    content_types: list[ContentType] = Field(default_factory=list)
    difficulty: list[int] = Field(default_factory=list)
    min_reliability: float | None = Field(default=None, ge=0.0, le=1.0)
    min_educational_value: float | None = Field(default=None, ge=0.0, le=1.0)
    source_types: list[SourceType] = Field(default_factory=list)
    source_ids: list[UUID] = Field(default_factory=list)
    verification_status: list[VerificationStatus] = Field(default_factory=list)
    time_range: TimeRange | None = None
    limit: int | None = Field(default=None, ge=1)

    def signature(self) -> str:
        """Order-independent description used in cache keys."""
        parts = [
            "s=" + ",".join(sorted(self.subjects)),
            "t=" + ",".join(sorted(self.topics)),
            "c=" + ",".join(sorted(c.value for c in self.content_types)),
            "d=" + ",".join(str(d) for d in sorted(self.difficulty)),
            f"r={self.min_reliability}",
            f"e={self.min_educational_value}",
            "st=" + ",".join(sorted(s.value for s in self.source_types)),
            "si=" + ",".join(sorted(str(s) for s in self.source_ids)),
            "v=" + ",".join(sorted(v.value for v in self.verification_status)),
            "tr=" + (
                f"{self.time_range.start.isoformat()}/{self.time_range.end.isoformat()}"
                if self.time_range else ""
            ),
        ]
        return "|".join(parts)


class KnowledgeSearchResult(BaseModel):
    entry: KnowledgeEntry
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    snippets: list[str] = Field(default_factory=list)


class Strictness(str, Enum):
    LENIENT = "lenient"
    MODERATE = "moderate"
    STRICT = "strict"


class FactValidationRequest(BaseModel):
    fact: str = Field(..., min_length=1)
    strictness: Strictness = Strictness.MODERATE
    sources: list[UUID] = Field(
        default_factory=list,
        description="Restrict corroboration to these sources",
    )


class ValidationEvidence(BaseModel):
    entry_id: UUID
    source_id: UUID
    content: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    strength: float = Field(..., ge=0.0, le=1.0)
    reliability: float = Field(..., ge=0.0, le=1.0)


class FactValidationResult(BaseModel):
    fact: str
    is_valid: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    supporting_evidence: list[ValidationEvidence] = Field(default_factory=list)
    contradicting_evidence: list[ValidationEvidence] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class SourceListRequest(BaseModel):
    """Source listing used when assembling contexts."""

    min_reliability: float = Field(default=0.8, ge=0.0, le=1.0)
    verification_status: list[VerificationStatus] = Field(
        default_factory=lambda: [VerificationStatus.VERIFIED]
    )
    topics: list[str] = Field(default_factory=list)
    limit: int = Field(default=20, ge=1, le=100)


class KnowledgeStatistics(BaseModel):
    total_entries: int = 0
    verified_entries: int = 0
    total_sources: int = 0
    average_reliability: float = 0.0
    entries_by_subject: dict[str, int] = Field(default_factory=dict)
    entries_by_content_type: dict[str, int] = Field(default_factory=dict)


__all__ = [
    "FactValidationRequest",
    "FactValidationResult",
    "KnowledgeSearchFilters",
    "KnowledgeSearchResult",
    "KnowledgeStatistics",
    "MemoryAnalytics",
    "MemoryLinkRequest",
    "MemoryOptimizationRequest",
    "MemoryOptimizationResult",
    "MemorySearchRequest",
    "MemorySearchResult",
    "OptimizationType",
    "ProgressPoint",
    "QualityFeedback",
    "SearchSnippet",
    "SortField",
    "SortOrder",
    "SourceListRequest",
    "Strictness",
    "TimeRange",
    "TopicStat",
    "ValidationEvidence",
]
