"""
Grounding Context Models

The EnhancedContext aggregate assembled by the context builder and the
request used to build it. Contexts are ephemeral and never persisted.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from grounding.clock import utc_now
from grounding.models.knowledge import EducationalSource, KnowledgeEntry, VerificationStatus
from grounding.models.profile import ConversationSummary, UltraCompressedProfile
from grounding.models.requests import TimeRange


class ContextLevel(str, Enum):
    """Named compression level of an assembled context."""
    LIGHT = "light"
    RECENT = "recent"
    SELECTIVE = "selective"
    FULL = "full"


class LevelConfig(BaseModel):
    """Nominal envelope for a context level. Targets, not hard caps."""

    max_tokens: int
    compression_ratio: float = Field(..., gt=0.0, le=1.0)


CONTEXT_LEVELS: dict[ContextLevel, LevelConfig] = {
    ContextLevel.LIGHT: LevelConfig(max_tokens=500, compression_ratio=0.9),
    ContextLevel.RECENT: LevelConfig(max_tokens=1000, compression_ratio=0.7),
    ContextLevel.SELECTIVE: LevelConfig(max_tokens=2000, compression_ratio=0.5),
    ContextLevel.FULL: LevelConfig(max_tokens=4000, compression_ratio=0.3),
}


class FactCheckPoint(BaseModel):
    """High-confidence fact surfaced separately for citation."""

    id: str
    fact: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    sources: list[str] = Field(default_factory=list)
    verification_date: datetime | None = None
    status: VerificationStatus = VerificationStatus.VERIFIED
    educational_context: str | None = None


class ConfidenceMarker(BaseModel):
    id: str
    claim: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    evidence: list[str] = Field(default_factory=list)
    alternative_views: list[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """Estimated token usage, total and per component."""

    total: int = 0
    profile: int = 0
    knowledge: int = 0
    history: int = 0
    sources: int = 0
    remaining: int = 0


class EnhancedContext(BaseModel):
    """Bounded grounding context handed to the language model."""

    student_profile: UltraCompressedProfile
    knowledge_base: list[KnowledgeEntry] = Field(default_factory=list, max_length=50)
    conversation_history: list[ConversationSummary] = Field(default_factory=list, max_length=10)
    external_sources: list[EducationalSource] = Field(default_factory=list, max_length=20)
    fact_check_points: list[FactCheckPoint] = Field(default_factory=list)
    confidence_markers: list[ConfidenceMarker] = Field(default_factory=list)
    compression_level: ContextLevel = ContextLevel.SELECTIVE
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    last_optimized: datetime = Field(default_factory=utc_now)


class ContextBuildRequest(BaseModel):
    """Request to assemble a grounding context."""

    user_id: UUID
    level: ContextLevel = ContextLevel.SELECTIVE
    query: str | None = None
    token_limit: int | None = Field(default=None, gt=0)
    include_memories: bool = True
    include_knowledge: bool = True
    include_progress: bool = True
    subjects: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    timeframe: TimeRange | None = None
