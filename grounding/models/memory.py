"""
Conversation Memory Model

A single stored interaction or insight from a tutoring conversation.
Memories are scored at creation, expire according to their retention
policy and can be linked to each other as a directed graph.
"""

from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, field_validator

from grounding.clock import utc_now


class MemoryType(str, Enum):
    """Kinds of interaction records kept for a learner."""
    USER_QUERY = "user_query"
    AI_RESPONSE = "ai_response"
    LEARNING_INTERACTION = "learning_interaction"
    FEEDBACK = "feedback"
    CORRECTION = "correction"
    INSIGHT = "insight"


class MemoryPriority(str, Enum):
    """Priority of a memory. Ordered from least to most important."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    MemoryPriority.LOW: 1,
    MemoryPriority.MEDIUM: 2,
    MemoryPriority.HIGH: 3,
    MemoryPriority.CRITICAL: 4,
}


class MemoryRetention(str, Enum):
    """
    Retention policy.

    Determines the expiry horizon measured from creation time:
    - SESSION: 1 day
    - SHORT_TERM: 7 days
    - LONG_TERM: 30 days
    - PERMANENT: 365 days
    """
    SESSION = "session"
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"
    PERMANENT = "permanent"


RETENTION_PERIODS: dict[MemoryRetention, timedelta] = {
    MemoryRetention.SESSION: timedelta(days=1),
    MemoryRetention.SHORT_TERM: timedelta(days=7),
    MemoryRetention.LONG_TERM: timedelta(days=30),
    MemoryRetention.PERMANENT: timedelta(days=365),
}


def compute_expiry(retention: MemoryRetention, created_at: datetime) -> datetime:
    """Expiry timestamp for a memory created at created_at."""
    return created_at + RETENTION_PERIODS[retention]


class LinkType(str, Enum):
    """Relationship carried by a memory link edge."""
    SIMILAR = "similar"
    CONTRADICTS = "contradicts"
    SUPPORTS = "supports"
    FOLLOWS = "follows"
    REFERENCES = "references"
    PART_OF = "part_of"


# Reverse edge type used for bidirectional links.
# Every type currently maps to itself.
REVERSE_LINK_TYPES: dict[LinkType, LinkType] = {t: t for t in LinkType}


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class MemorySource(str, Enum):
    """Where the memory originated."""
    CONVERSATION = "conversation"
    FEEDBACK = "feedback"
    SYSTEM = "system"
    IMPORT = "import"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


class InteractionData(BaseModel):
    """The interaction captured by a memory."""

    content: str = Field(..., min_length=1, description="Interaction text")
    intent: str | None = None
    topic: str | None = None
    subject: str | None = None
    sentiment: Sentiment | None = None
    complexity: Complexity | None = None
    response: str | None = Field(default=None, description="Attached assistant response")
    learning_objective: str | None = None

    # Response metadata
    model_used: str | None = None
    provider: str | None = None
    processing_time_ms: int | None = Field(default=None, ge=0)
    tokens_used: int | None = Field(default=None, ge=0)
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)


class MemoryMetadata(BaseModel):
    """Bookkeeping attached to every memory."""

    source: MemorySource = MemorySource.CONVERSATION
    version: int = 1
    compression_applied: bool = False
    original_size: int | None = None
    compressed_size: int | None = None
    validation_status: ValidationStatus = ValidationStatus.PENDING
    access_count: int = 0
    last_accessed: datetime | None = None
    knowledge_base_linked: bool = False
    cross_conversation_linked: bool = False
    knowledge_base_candidate: bool = False
    feedback_collected: bool = False
    user_satisfaction: float | None = Field(default=None, ge=0.0, le=1.0)
    checksum: str | None = None


class MemoryLink(BaseModel):
    """Directed edge from one memory to another."""

    target_id: UUID
    link_type: LinkType
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)


class MemoryCreate(BaseModel):
    """Schema for storing a new memory."""

    user_id: UUID = Field(..., description="Owner of the memory")
    conversation_id: str | None = Field(default=None, description="Originating conversation")
    memory_type: MemoryType = Field(..., description="Kind of interaction record")
    interaction_data: InteractionData
    priority: MemoryPriority = MemoryPriority.MEDIUM
    retention: MemoryRetention = MemoryRetention.LONG_TERM
    tags: list[str] = Field(default_factory=list)
    source: MemorySource = MemorySource.CONVERSATION

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: list[str]) -> list[str]:
        """Tags form a set; keep first-seen order."""
        return list(dict.fromkeys(t.strip() for t in v if t and t.strip()))


class Memory(BaseModel):
    """Complete memory record as stored."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    conversation_id: str | None = None
    memory_type: MemoryType
    interaction_data: InteractionData
    quality_score: float = Field(..., ge=0.0, le=1.0)
    memory_relevance_score: float = Field(..., ge=0.0, le=1.0)
    priority: MemoryPriority = MemoryPriority.MEDIUM
    retention: MemoryRetention = MemoryRetention.LONG_TERM
    tags: list[str] = Field(default_factory=list)
    links: list[MemoryLink] = Field(default_factory=list)
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def linked_memories(self) -> list[UUID]:
        """Distinct link targets in insertion order."""
        return list(dict.fromkeys(link.target_id for link in self.links))

    def has_link(self, target_id: UUID, link_type: LinkType) -> bool:
        return any(
            link.target_id == target_id and link.link_type == link_type
            for link in self.links
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at
